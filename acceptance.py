"""
Per-layer acceptance tests against ephemeral containers.

A test is a command executed inside an idle container started from the layer
image; its expectation (exit code, stdout/stderr checks) decides pass/fail.
The container is removed whatever the outcome. Infrastructure problems
(container cannot be created, started or exec'd into) are reported apart
from tests that logically fail.
"""

import concurrent.futures
import logging
import re
import threading
from typing import List, Optional, Sequence, Set

from config import ICON_FAIL, ICON_OK, ICON_TEST, BuildConfig, BuiltLayer, TestOutcome, TestResult, TestSpec
from engine import ContainerEngine, ExecResult
from errors import EngineError, RunnerError
from utils import container_name

IDLE_COMMAND = ['sh', '-c', 'while sleep 3600; do :; done']
INFRASTRUCTURE_DESC = "test infrastructure"

_MAX_DETAIL = 2000


def _clip(text: str) -> str:
    text = (text or "").strip()
    if len(text) > _MAX_DETAIL:
        return text[:_MAX_DETAIL] + "..."
    return text


def evaluate(test: TestSpec, result: ExecResult) -> TestOutcome:
    """Check an exec result against the test's expectation"""
    expect = test.expect
    problems: List[str] = []
    if expect.exit_code is not None and result.exit_code != expect.exit_code:
        problems.append(f"exit code {result.exit_code}, expected {expect.exit_code}")
    if expect.stdout_contains is not None and expect.stdout_contains not in result.stdout:
        problems.append(f"stdout does not contain {expect.stdout_contains!r}")
    if expect.stdout_not_contains is not None and expect.stdout_not_contains in result.stdout:
        problems.append(f"stdout contains {expect.stdout_not_contains!r}")
    if expect.stderr_contains is not None and expect.stderr_contains not in result.stderr:
        problems.append(f"stderr does not contain {expect.stderr_contains!r}")
    if expect.stdout_matches is not None and not re.search(expect.stdout_matches, result.stdout, re.MULTILINE):
        problems.append(f"stdout does not match /{expect.stdout_matches}/")

    if not problems:
        return TestOutcome(desc=test.desc, passed=True, detail="")
    detail = "; ".join(problems)
    output = _clip(result.stderr) or _clip(result.stdout)
    if output:
        detail += f"\n{output}"
    return TestOutcome(desc=test.desc, passed=False, detail=detail)


class LayerTestRunner:
    """Runs a layer's declared tests inside a throwaway container"""

    def __init__(self, engine: ContainerEngine, config: BuildConfig):
        self.engine = engine
        self.logger: logging.Logger = config.logger
        self.exec_timeout = config.exec_timeout
        self.keep_containers = config.keep_test_containers
        self._live: Set[str] = set()
        self._lock = threading.Lock()
        self._aborted = threading.Event()

    def run(self, layer: BuiltLayer, tests: Sequence[TestSpec], parallel: bool = False,
            image: Optional[str] = None) -> TestResult:
        """Run tests against image (default: the layer image) and return the TestResult"""
        if not tests:
            return TestResult()
        image = image or layer.ref
        self.logger.info("%s Testing layer %s (%d test(s))", ICON_TEST, layer.name, len(tests))
        try:
            outcomes = self._run_in_container(layer.name, image, tests, parallel)
        except RunnerError as e:
            self.logger.error("%s Test infrastructure failed for layer %s: %s", ICON_FAIL, layer.name, e.reason)
            return TestResult(
                outcomes=(TestOutcome(desc=INFRASTRUCTURE_DESC, passed=False, detail=e.reason),),
                runner_error=e.reason,
            )

        result = TestResult(outcomes=tuple(outcomes))
        failed = [o for o in outcomes if not o.passed]
        if failed:
            self.logger.warning("%s %d/%d test(s) failed in layer %s", ICON_FAIL, len(failed), len(outcomes), layer.name)
            for outcome in failed:
                self.logger.warning("   %s: %s", outcome.desc, outcome.detail.splitlines()[0] if outcome.detail else "")
        else:
            self.logger.info("%s All %d test(s) passed in layer %s", ICON_OK, len(outcomes), layer.name)
        return result

    def _run_in_container(self, layer_name: str, image: str, tests: Sequence[TestSpec], parallel: bool) -> List[TestOutcome]:
        if self._aborted.is_set():
            raise RunnerError(layer_name, "test run aborted")
        container = None
        try:
            try:
                container = self.engine.create_container(image, IDLE_COMMAND, name=container_name(layer_name))
            except EngineError as e:
                raise RunnerError(layer_name, f"cannot create test container from {image}: {e}") from e
            with self._lock:
                self._live.add(container)
            try:
                self.engine.start_container(container)
            except EngineError as e:
                raise RunnerError(layer_name, f"cannot start test container: {e}") from e

            if parallel and len(tests) > 1:
                with concurrent.futures.ThreadPoolExecutor(max_workers=min(8, len(tests))) as pool:
                    return list(pool.map(lambda t: self._run_one(layer_name, container, t), tests))
            return [self._run_one(layer_name, container, test) for test in tests]
        finally:
            if container is not None:
                self._teardown(layer_name, container)

    def _run_one(self, layer_name: str, container: str, test: TestSpec) -> TestOutcome:
        if self._aborted.is_set():
            raise RunnerError(layer_name, "test run aborted")
        self.logger.debug("   [%s] %s: %s", layer_name, test.desc, ' '.join(test.command))
        try:
            result = self.engine.exec_in_container(container, test.command, env=test.env, timeout=self.exec_timeout)
        except EngineError as e:
            raise RunnerError(layer_name, f"cannot run test {test.desc!r}: {e}") from e
        return evaluate(test, result)

    def _teardown(self, layer_name: str, container: str):
        with self._lock:
            self._live.discard(container)
        if self.keep_containers:
            self.logger.info("   Keeping test container %s of layer %s", container, layer_name)
            return
        try:
            self.engine.remove_container(container)
        except EngineError as e:
            self.logger.warning("Failed to remove test container %s: %s", container, e)

    def abort(self):
        """Tear down every container that is still running (cancellation)"""
        self._aborted.set()
        with self._lock:
            live = list(self._live)
            self._live.clear()
        for container in live:
            try:
                self.engine.remove_container(container)
            except EngineError as e:
                self.logger.warning("Failed to remove test container %s: %s", container, e)
