"""
Pytest configuration and fixtures for layered_img_build tests.
"""

import logging
import sys
import textwrap
from pathlib import Path

import pytest

# Project modules live at the repository root; the fake engine beside the tests
sys.path.insert(0, str(Path(__file__).parent.parent))
sys.path.insert(0, str(Path(__file__).parent))

from config import BuildConfig  # noqa: E402
from fake_engine import FakeEngine  # noqa: E402

LAYER_HEADER = "ARG base\nFROM ${base}\n"

THREE_LAYERS_YAML = """\
base:
  context: base-context

layers:
  - name: base
    tests:
      - desc: base marker present
        command: ["cat", "/base/marker"]
  - name: tools
    dependencies: [base]
    tests:
      - desc: tool works
        command: ["tool", "--version"]
      - desc: tool is fast
        command: ["tool", "--bench"]
  - name: app
    dependencies: [tools]
"""


def write_tree(root: Path, files: dict) -> Path:
    for rel, content in files.items():
        path = root / rel
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(textwrap.dedent(content) if isinstance(content, str) else content)
    return root


@pytest.fixture
def logger():
    return logging.getLogger("layered_img_build.tests")


@pytest.fixture
def build_config(logger):
    return BuildConfig(repository="layered-work", logger=logger, max_workers=4, test_workers=2)


@pytest.fixture
def engine():
    return FakeEngine()


@pytest.fixture
def make_project(tmp_path):
    """Write a build context from {relative path: content}"""
    def _make(files: dict) -> Path:
        return write_tree(tmp_path / "project", files)
    return _make


@pytest.fixture
def three_layer_project(make_project):
    """base -> tools -> app on a base image built from a context"""
    return make_project({
        "layers.yaml": THREE_LAYERS_YAML,
        "base-context/Dockerfile": "FROM scratch\nENV PATH=/usr/bin:/bin\n",
        "base-context/os-release": "ID=fake\n",
        "layers/base/Dockerfile": LAYER_HEADER + "COPY marker /base/marker\n",
        "layers/base/marker": "base\n",
        "layers/tools/Dockerfile": LAYER_HEADER + "COPY tool /usr/bin/tool\nENV PATH=/opt/tools/bin\n",
        "layers/tools/tool": "#!/bin/sh\necho tool 1.0\n",
        "layers/app/Dockerfile": LAYER_HEADER + "COPY app.py /srv/app.py\n",
        "layers/app/app.py": "print('hello')\n",
    })
