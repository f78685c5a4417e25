"""Tests for hasher.py: deterministic fingerprints of layer inputs."""

import os
import shutil

import pytest

from config import BaseImageSpec, LayerSpec
from errors import BuildError
from hasher import ContentHasher, iter_context_files

BASE_FP = "0" * 64


def _spec(path, name="tools", deps=(), **kwargs):
    return LayerSpec(name=name, context=str(path), dependencies=tuple(deps), **kwargs)


@pytest.fixture
def context(tmp_path):
    root = tmp_path / "ctx"
    (root / "bin").mkdir(parents=True)
    (root / "Dockerfile").write_text("ARG base\nFROM ${base}\nCOPY bin /usr/local/bin\n")
    (root / "bin" / "tool").write_text("#!/bin/sh\necho tool\n")
    return root


class TestFingerprint:
    """Tests for ContentHasher.fingerprint."""

    def test_stable_across_calls_and_copies(self, context, tmp_path):
        """Same content in another directory gives the same fingerprint."""
        hasher = ContentHasher()
        copy = tmp_path / "elsewhere"
        shutil.copytree(context, copy)
        os.utime(copy / "Dockerfile", (1, 1))

        first = hasher.fingerprint(_spec(context), [], BASE_FP)

        assert first == hasher.fingerprint(_spec(context), [], BASE_FP)
        assert first == hasher.fingerprint(_spec(copy), [], BASE_FP)
        assert len(first) == 64

    def test_content_change(self, context):
        hasher = ContentHasher()
        before = hasher.fingerprint(_spec(context), [], BASE_FP)
        (context / "bin" / "tool").write_text("#!/bin/sh\necho tool v2\n")

        assert hasher.fingerprint(_spec(context), [], BASE_FP) != before

    def test_new_file(self, context):
        hasher = ContentHasher()
        before = hasher.fingerprint(_spec(context), [], BASE_FP)
        (context / "README").write_text("docs\n")

        assert hasher.fingerprint(_spec(context), [], BASE_FP) != before

    def test_exec_bit(self, context):
        hasher = ContentHasher()
        before = hasher.fingerprint(_spec(context), [], BASE_FP)
        os.chmod(context / "bin" / "tool", 0o755)

        assert hasher.fingerprint(_spec(context), [], BASE_FP) != before

    def test_dependency_fingerprints_propagate(self, context):
        hasher = ContentHasher()
        spec = _spec(context, deps=["base"])

        assert hasher.fingerprint(spec, ["a" * 64], BASE_FP) != hasher.fingerprint(spec, ["b" * 64], BASE_FP)

    def test_dependency_order_matters(self, context):
        hasher = ContentHasher()
        one = hasher.fingerprint(_spec(context, deps=["x", "y"]), ["a" * 64, "b" * 64], BASE_FP)
        two = hasher.fingerprint(_spec(context, deps=["y", "x"]), ["b" * 64, "a" * 64], BASE_FP)

        assert one != two

    def test_base_fingerprint_propagates(self, context):
        hasher = ContentHasher()
        assert hasher.fingerprint(_spec(context), [], "1" * 64) != hasher.fingerprint(_spec(context), [], BASE_FP)

    def test_build_args_and_dockerfile(self, context):
        hasher = ContentHasher()
        plain = hasher.fingerprint(_spec(context), [], BASE_FP)

        assert hasher.fingerprint(_spec(context, build_args={"V": "1"}), [], BASE_FP) != plain
        assert hasher.fingerprint(_spec(context, dockerfile="Other"), [], BASE_FP) != plain

    def test_layer_name_does_not_matter(self, context):
        """Identical inputs under another name share the fingerprint."""
        hasher = ContentHasher()
        assert (hasher.fingerprint(_spec(context, name="a"), [], BASE_FP)
                == hasher.fingerprint(_spec(context, name="b"), [], BASE_FP))

    def test_dependency_count_mismatch(self, context):
        with pytest.raises(ValueError, match="has 1 dependencies, got 0"):
            ContentHasher().fingerprint(_spec(context, deps=["base"]), [], BASE_FP)

    def test_missing_context(self, tmp_path):
        with pytest.raises(BuildError) as exc:
            ContentHasher().fingerprint(_spec(tmp_path / "gone"), [], BASE_FP)
        assert exc.value.layer == "tools"


class TestDockerignore:
    """Tests for .dockerignore handling."""

    def test_ignored_files_do_not_count(self, context):
        hasher = ContentHasher()
        (context / ".dockerignore").write_text("# scratch files\n*.log\nbuild/\n")
        before = hasher.fingerprint(_spec(context), [], BASE_FP)

        (context / "debug.log").write_text("noise\n")
        (context / "build").mkdir()
        (context / "build" / "out.o").write_text("obj\n")

        assert hasher.fingerprint(_spec(context), [], BASE_FP) == before

    def test_negation_reincludes(self, context):
        (context / ".dockerignore").write_text("*.log\n!keep.log\n")
        (context / "drop.log").write_text("x\n")
        (context / "keep.log").write_text("y\n")

        files = list(iter_context_files(str(context)))

        assert "keep.log" in files
        assert "drop.log" not in files
        assert files == sorted(files)
        assert "bin/tool" in files

    def test_dockerfile_counts_even_when_ignored(self, context):
        """An allow-list .dockerignore must not hide Dockerfile edits."""
        hasher = ContentHasher()
        (context / ".dockerignore").write_text("*\n!bin\n")
        before = hasher.fingerprint(_spec(context), [], BASE_FP)

        with open(context / "Dockerfile", "a") as f:
            f.write("RUN rm -rf /etc\n")

        assert hasher.fingerprint(_spec(context), [], BASE_FP) != before

    def test_dockerfile_outside_default_name(self, context):
        hasher = ContentHasher()
        (context / "Dockerfile.dev").write_text("ARG base\nFROM ${base}\n")
        (context / ".dockerignore").write_text("Dockerfile.dev\n")
        spec = _spec(context, dockerfile="Dockerfile.dev")
        before = hasher.fingerprint(spec, [], BASE_FP)

        (context / "Dockerfile.dev").write_text("ARG base\nFROM ${base}\nRUN true\n")

        assert hasher.fingerprint(spec, [], BASE_FP) != before

    def test_star_stays_in_one_segment(self, context):
        """'*.txt' only matches at the context root, like docker."""
        hasher = ContentHasher()
        (context / ".dockerignore").write_text("*.txt\n")
        (context / "top.txt").write_text("ignored\n")
        (context / "sub").mkdir()
        (context / "sub" / "a.txt").write_text("v1\n")

        files = list(iter_context_files(str(context)))
        assert "top.txt" not in files
        assert "sub/a.txt" in files

        before = hasher.fingerprint(_spec(context), [], BASE_FP)
        (context / "sub" / "a.txt").write_text("v2\n")
        assert hasher.fingerprint(_spec(context), [], BASE_FP) != before

    def test_double_star_spans_directories(self, context):
        (context / ".dockerignore").write_text("**/*.txt\n")
        (context / "top.txt").write_text("x\n")
        (context / "sub" / "deeper").mkdir(parents=True)
        (context / "sub" / "deeper" / "a.txt").write_text("x\n")
        (context / "sub" / "deeper" / "keep.sh").write_text("x\n")

        files = list(iter_context_files(str(context)))

        assert "top.txt" not in files
        assert "sub/deeper/a.txt" not in files
        assert "sub/deeper/keep.sh" in files


class TestBaseFingerprint:
    """Tests for ContentHasher.fingerprint_base and combine."""

    def test_image_base_keyed_by_resolved_id(self):
        hasher = ContentHasher()
        spec = BaseImageSpec(image="ubuntu:22.04")

        assert hasher.fingerprint_base(spec, "sha256:aa") != hasher.fingerprint_base(spec, "sha256:bb")
        assert hasher.fingerprint_base(spec, "sha256:aa") == hasher.fingerprint_base(spec, "sha256:aa")

    def test_context_base(self, context):
        hasher = ContentHasher()
        spec = BaseImageSpec(context=str(context))
        before = hasher.fingerprint_base(spec)
        (context / "extra").write_text("1\n")

        assert hasher.fingerprint_base(spec) != before

    def test_combine_is_order_sensitive(self):
        hasher = ContentHasher()
        assert hasher.combine(["a", "b"]) != hasher.combine(["b", "a"])
        assert hasher.combine(["a", "b"]) == hasher.combine(["a", "b"])
