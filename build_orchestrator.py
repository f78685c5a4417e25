import concurrent.futures
import logging
import os
import threading
from dataclasses import replace
from typing import Dict, List, Optional, Sequence, Tuple

from acceptance import LayerTestRunner
from aggregator import aggregate_test_results
from composer import ImageComposer
from config import (
    BASE_IMAGE_NAME,
    DEFAULT_DEFINITION_FILE,
    DEFAULT_TAG,
    ICON_FAIL,
    ICON_OK,
    ICON_SKIP,
    BaseImage,
    BuildConfig,
    BuildDefinition,
    BuildResult,
    BuildState,
    BuiltLayer,
    ComposedImage,
    LayerSpec,
    LayerStatus,
    TestResult,
    summary_error,
)
from engine import ContainerEngine, DockerCLI
from errors import (
    AcceptanceTestError,
    BuildError,
    CompositionError,
    ConfigurationError,
    EngineError,
    LayerError,
    LayeredBuildError,
)
from hasher import ContentHasher
from layer_builder import LayerBuilder
from parser import DeclarationParser, dependency_closure, topological_order
from repository import WorkingRepository
from utils import human_size


class BuildOrchestrator:
    """Drives one layered build through its states.

    RESOLVING -> SCHEDULING -> BUILDING -> COMPOSING -> TESTING -> AGGREGATING -> DONE

    Layers whose dependencies are all built run concurrently; a failed layer
    marks everything depending on it as skipped while independent branches
    keep building. The final image is only composed when every layer built.
    """

    def __init__(self, config: BuildConfig, engine: Optional[ContainerEngine] = None):
        self.config = config
        self.logger: logging.Logger = config.logger
        self.engine = engine or DockerCLI(
            use_sudo=config.use_sudo,
            docker_config=config.docker_config,
            logger=self.logger,
        )
        self.parser = DeclarationParser()
        self.hasher = ContentHasher()
        self.repository = WorkingRepository(self.engine, config)
        self.composer = ImageComposer(self.engine, self.logger)
        self._cancelled = threading.Event()
        self.builder = LayerBuilder(self.engine, self.repository, self.composer, config,
                                    hasher=self.hasher, cancelled=self._cancelled)
        self.test_runner = LayerTestRunner(self.engine, config)

        self.state = BuildState.RESOLVING
        self.statuses: Dict[str, LayerStatus] = {}

    def _enter(self, state: BuildState):
        self.state = state
        self.logger.debug("Build state: %s", state.value)

    def cancel(self):
        """Stop scheduling new work and tear down running test containers"""
        self._cancelled.set()
        self.test_runner.abort()

    def build(self, context_dir: str, definition_file: str = DEFAULT_DEFINITION_FILE,
              tag: str = DEFAULT_TAG) -> BuildResult:
        """Build every declared layer and compose them into `tag`.

        Raises ConfigurationError for an invalid definition. Any other failure
        is reported through the returned BuildResult (see BuildResult.error).
        """
        context_dir = os.path.abspath(context_dir)
        if not os.path.isabs(definition_file):
            definition_file = os.path.join(context_dir, definition_file)

        self._enter(BuildState.RESOLVING)
        self.logger.info("📋 Parsing layers from %s", definition_file)
        try:
            definition = self.parser.parse_file(definition_file, context_dir)
        except ConfigurationError:
            self._enter(BuildState.FAILED)
            raise
        self.logger.info("   Found %d layer(s)", len(definition.layers))

        try:
            return self._run(definition, tag)
        except KeyboardInterrupt:
            self.logger.warning("Build interrupted, cleaning up")
            self.cancel()
            self._enter(BuildState.FAILED)
            raise

    def _run(self, definition: BuildDefinition, tag: str) -> BuildResult:
        self._enter(BuildState.SCHEDULING)
        order = topological_order(definition.layers)
        self.statuses = {layer.name: LayerStatus.PENDING for layer in definition.layers}

        try:
            base = self.builder.build_base(definition.base)
        except LayerError as e:
            self.logger.error("%s Base image failed: %s", ICON_FAIL, e.reason)
            skipped = [layer.name for layer in definition.layers]
            for name in skipped:
                self.statuses[name] = LayerStatus.SKIPPED
            self._enter(BuildState.FAILED)
            return BuildResult(
                base_image=None,
                failed={BASE_IMAGE_NAME: e.reason},
                skipped=tuple(skipped),
                report=aggregate_test_results([]),
                error=summary_error({BASE_IMAGE_NAME: e.reason}, skipped),
            )
        self.logger.info("   Base image: %s (%s)", base.ref, human_size(base.size))

        self._enter(BuildState.BUILDING)
        built, failed, skipped = self._build_layers(definition, order, base)
        reused = sum(1 for layer in built.values() if layer.cached)
        self.logger.info("📊 Reused %d layer(s), built %d, failed %d, skipped %d",
                         reused, len(built) - reused, len(failed), len(skipped))

        final_image: Optional[ComposedImage] = None
        error: Optional[LayeredBuildError] = summary_error(failed, skipped)
        if error is None:
            self._enter(BuildState.COMPOSING)
            try:
                final_image = self.composer.compose(base, [built[layer.name] for layer in order], tag)
            except CompositionError as e:
                self.logger.error("%s Composing %s failed: %s", ICON_FAIL, tag, e)
                error = e
        else:
            self.logger.warning("%s Not composing %s: %s", ICON_SKIP, tag, error)

        self._enter(BuildState.TESTING)
        tested = self._run_tests(definition, built)

        self._enter(BuildState.AGGREGATING)
        layers = tuple(tested[layer.name] for layer in definition.layers if layer.name in tested)
        report = aggregate_test_results(layers)
        if error is None and not report.passed:
            failing = [layer.name for layer in layers if layer.test_result and not layer.test_result.passed]
            error = AcceptanceTestError(report.failures, failing)

        result = BuildResult(
            base_image=base,
            layers=layers,
            failed=dict(failed),
            skipped=tuple(skipped),
            final_image=final_image,
            report=report,
            error=error,
        )
        self._enter(BuildState.DONE if result.ok else BuildState.FAILED)
        return result

    def _build_layers(self, definition: BuildDefinition, order: Sequence[LayerSpec],
                      base: BaseImage) -> Tuple[Dict[str, BuiltLayer], Dict[str, str], List[str]]:
        specs = {layer.name: layer for layer in order}
        position = {layer.name: idx for idx, layer in enumerate(order)}
        closures = {
            layer.name: dependency_closure(layer.name, definition.layers)
            for layer in order
        }
        waiting = {layer.name: len(layer.dependencies) for layer in order}
        dependents: Dict[str, List[str]] = {layer.name: [] for layer in order}
        for layer in order:
            for dep in layer.dependencies:
                dependents[dep].append(layer.name)

        built: Dict[str, BuiltLayer] = {}
        failed: Dict[str, str] = {}
        skipped: List[str] = []

        def skip_dependents(name: str):
            stack = list(dependents[name])
            while stack:
                child = stack.pop()
                if self.statuses[child] != LayerStatus.PENDING:
                    continue
                self.statuses[child] = LayerStatus.SKIPPED
                skipped.append(child)
                self.logger.warning("%s Skipping layer %s: depends on failed layer %s", ICON_SKIP, child, name)
                stack.extend(dependents[child])

        with concurrent.futures.ThreadPoolExecutor(max_workers=self.config.max_workers,
                                                   thread_name_prefix="layer-build") as pool:
            running: Dict[concurrent.futures.Future, str] = {}

            def submit(name: str):
                spec = specs[name]
                self.statuses[name] = LayerStatus.BUILDING
                closure = [built[dep] for dep in closures[name]]
                running[pool.submit(self._build_one, spec, base, closure)] = name

            try:
                for layer in order:
                    if waiting[layer.name] == 0:
                        submit(layer.name)

                while running:
                    done, _ = concurrent.futures.wait(running, return_when=concurrent.futures.FIRST_COMPLETED)
                    for future in sorted(done, key=lambda f: position[running[f]]):
                        name = running.pop(future)
                        try:
                            layer = future.result()
                        except LayerError as e:
                            self.statuses[name] = LayerStatus.FAILED
                            failed[name] = e.reason
                            self.logger.error("%s Layer %s failed: %s", ICON_FAIL, name, e.reason)
                            skip_dependents(name)
                            continue
                        built[name] = layer
                        self.statuses[name] = LayerStatus.BUILT
                        for child in dependents[name]:
                            waiting[child] -= 1
                            if waiting[child] == 0 and self.statuses[child] == LayerStatus.PENDING:
                                submit(child)
            except BaseException:
                self.cancel()
                pool.shutdown(wait=False, cancel_futures=True)
                raise

        skipped.sort(key=position.__getitem__)
        return built, failed, skipped

    def _build_one(self, spec: LayerSpec, base: BaseImage, closure: Sequence[BuiltLayer]) -> BuiltLayer:
        fingerprints = {layer.name: layer.fingerprint for layer in closure}
        try:
            fingerprint = self.hasher.fingerprint(
                spec, [fingerprints[dep] for dep in spec.dependencies], base.fingerprint)
            return self.builder.build(spec, fingerprint, base, closure)
        except (EngineError, OSError) as e:
            raise BuildError(spec.name, str(e)) from e

    def _run_tests(self, definition: BuildDefinition, built: Dict[str, BuiltLayer]) -> Dict[str, BuiltLayer]:
        tested = dict(built)
        todo = [spec for spec in definition.layers if spec.tests and spec.name in built]
        if not todo:
            return tested

        with concurrent.futures.ThreadPoolExecutor(max_workers=self.config.test_workers,
                                                   thread_name_prefix="layer-test") as pool:
            futures = {
                spec.name: pool.submit(self.test_runner.run, built[spec.name], spec.tests, spec.parallel_tests)
                for spec in todo
            }
            try:
                for name, future in futures.items():
                    result: TestResult = future.result()
                    tested[name] = replace(built[name], test_result=result)
            except BaseException:
                # tear down live test containers before the pool waits for its workers
                self.cancel()
                pool.shutdown(wait=False, cancel_futures=True)
                raise

        passed = sum(1 for name in futures if tested[name].test_result.passed)
        self.logger.info("%s Tests passed for %d/%d layer(s)", ICON_OK if passed == len(futures) else ICON_FAIL,
                         passed, len(futures))
        return tested


def build(config: BuildConfig, context_dir: str, definition_file: str = DEFAULT_DEFINITION_FILE,
          tag: str = DEFAULT_TAG, engine: Optional[ContainerEngine] = None) -> BuildResult:
    """Run one layered build; see BuildOrchestrator.build"""
    return BuildOrchestrator(config, engine).build(context_dir, definition_file, tag)
