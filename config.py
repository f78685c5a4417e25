from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Dict, List, Mapping, Optional, Tuple
from enum import Enum
import logging
import os

from errors import PartialBuildError, LayeredBuildError

if TYPE_CHECKING:
    from aggregator import TestReport


DEFAULT_DEFINITION_FILE = "layers.yaml"
DEFAULT_REPOSITORY = "layered-work"
DEFAULT_TAG = "layered-built:latest"
DEFAULT_DOCKERFILE = "Dockerfile"

# Repository names the engine uses for its own images
BASE_IMAGE_NAME = "base-image"
PARENT_IMAGE_NAME = "parent"
RESERVED_LAYER_NAMES = {BASE_IMAGE_NAME, PARENT_IMAGE_NAME}

# Build arg through which a layer Dockerfile receives its parent (FROM ${base})
BASE_BUILD_ARG = "base"

IMAGE_LABEL_LAYER = "io.layered-img-build.layer"
IMAGE_LABEL_FINGERPRINT = "io.layered-img-build.fingerprint"

# Set LAYERIMG_LOG_PLAIN=1 to keep log lines ASCII only
PLAIN_LOG = os.getenv('LAYERIMG_LOG_PLAIN', '0').lower() in ('1', 'true', 'yes')
ICON_REUSE = '♻️ ' if not PLAIN_LOG else '[CACHED]'
ICON_BUILD = '🔨' if not PLAIN_LOG else '[BUILD]'
ICON_OK = '✅' if not PLAIN_LOG else '[OK]'
ICON_FAIL = '❌' if not PLAIN_LOG else '[FAIL]'
ICON_SKIP = '⏭️ ' if not PLAIN_LOG else '[SKIP]'
ICON_TEST = '🧪' if not PLAIN_LOG else '[TEST]'
ICON_COMPOSE = '🧩' if not PLAIN_LOG else '[COMPOSE]'


def default_logger() -> logging.Logger:
    return logging.getLogger("layered_img_build")


class LayerStatus(Enum):
    PENDING = "pending"
    BUILDING = "building"
    BUILT = "built"
    FAILED = "failed"
    SKIPPED = "skipped"


class BuildState(Enum):
    RESOLVING = "resolving"
    SCHEDULING = "scheduling"
    BUILDING = "building"
    COMPOSING = "composing"
    TESTING = "testing"
    AGGREGATING = "aggregating"
    DONE = "done"
    FAILED = "failed"


@dataclass(frozen=True)
class BuildConfig:
    """Immutable configuration of one build invocation.

    The logger is the only output channel of the engine; it never configures
    handlers itself.
    """
    repository: str = DEFAULT_REPOSITORY
    logger: logging.Logger = field(default_factory=default_logger)
    max_workers: int = 4
    test_workers: int = 4
    exec_timeout: int = 600
    docker_config: Optional[str] = None
    use_sudo: Optional[bool] = None
    push: Optional[bool] = None  # None: push only when the repository names a registry
    keep_test_containers: bool = False

    def __post_init__(self):
        if not self.repository:
            raise ValueError("repository must not be empty")
        if self.max_workers < 1 or self.test_workers < 1:
            raise ValueError("worker counts must be positive")


@dataclass(frozen=True)
class BaseImageSpec:
    """Root of the composition: either an image to pull or a context to build"""
    image: Optional[str] = None
    context: Optional[str] = None
    dockerfile: str = DEFAULT_DOCKERFILE
    build_args: Mapping[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class TestExpectation:
    __test__ = False

    exit_code: Optional[int] = 0
    stdout_contains: Optional[str] = None
    stdout_not_contains: Optional[str] = None
    stderr_contains: Optional[str] = None
    stdout_matches: Optional[str] = None


@dataclass(frozen=True)
class TestSpec:
    __test__ = False

    desc: str
    command: Tuple[str, ...]
    env: Mapping[str, str] = field(default_factory=dict)
    expect: TestExpectation = field(default_factory=TestExpectation)


@dataclass(frozen=True)
class LayerSpec:
    """A single independently buildable layer"""
    name: str
    context: str
    dockerfile: str = DEFAULT_DOCKERFILE
    dependencies: Tuple[str, ...] = ()
    build_args: Mapping[str, str] = field(default_factory=dict)
    tests: Tuple[TestSpec, ...] = ()
    parallel_tests: bool = False


@dataclass(frozen=True)
class BuildDefinition:
    base: BaseImageSpec
    layers: Tuple[LayerSpec, ...]
    source: Optional[str] = None

    def layer(self, name: str) -> LayerSpec:
        for spec in self.layers:
            if spec.name == name:
                return spec
        raise KeyError(name)


@dataclass(frozen=True)
class TestOutcome:
    __test__ = False

    desc: str
    passed: bool
    detail: str = ""


@dataclass(frozen=True)
class TestResult:
    __test__ = False

    outcomes: Tuple[TestOutcome, ...] = ()
    runner_error: Optional[str] = None

    @property
    def passed(self) -> bool:
        return self.runner_error is None and all(o.passed for o in self.outcomes)


@dataclass(frozen=True)
class BaseImage:
    ref: str
    size: int
    diff_ids: Tuple[str, ...]
    fingerprint: str


@dataclass(frozen=True)
class BuiltLayer:
    name: str
    ref: str
    size: int
    fingerprint: str
    diff_ids: Tuple[str, ...]
    cached: bool = False
    test_result: Optional[TestResult] = None


@dataclass(frozen=True)
class ComposedImage:
    ref: str
    image_id: str
    size: int
    diff_ids: Tuple[str, ...]


@dataclass(frozen=True)
class BuildResult:
    """Terminal artifact of one build invocation.

    A result with ``error`` set is partial: the layers that did build are
    still listed so callers can log them and persist their test outcomes.
    """
    base_image: Optional[BaseImage]
    layers: Tuple[BuiltLayer, ...] = ()
    failed: Mapping[str, str] = field(default_factory=dict)
    skipped: Tuple[str, ...] = ()
    final_image: Optional[ComposedImage] = None
    report: Optional["TestReport"] = None
    error: Optional[LayeredBuildError] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def layer(self, name: str) -> Optional[BuiltLayer]:
        for built in self.layers:
            if built.name == name:
                return built
        return None

    def raise_for_status(self):
        if self.error is not None:
            raise self.error


def summary_error(failed: Dict[str, str], skipped: List[str]) -> Optional[PartialBuildError]:
    if not failed and not skipped:
        return None
    return PartialBuildError(failed, skipped)

