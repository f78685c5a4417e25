import logging
import threading
from typing import List, Optional, Sequence, Tuple

from composer import ImageComposer
from config import (
    BASE_BUILD_ARG,
    BASE_IMAGE_NAME,
    ICON_BUILD,
    ICON_OK,
    ICON_REUSE,
    IMAGE_LABEL_FINGERPRINT,
    IMAGE_LABEL_LAYER,
    BaseImage,
    BaseImageSpec,
    BuildConfig,
    BuiltLayer,
    LayerSpec,
)
from engine import ContainerEngine
from errors import BuildError, CompositionError, EngineError, RepositoryError
from hasher import ContentHasher
from repository import WorkingRepository
from utils import human_size


class LayerBuilder:
    """Builds one layer image from its context, or reuses the cached one.

    - Looks the fingerprint tag up in the working repository (cache hit)
    - Otherwise resolves the parent image (base, single dependency, or a
      composed parent for several dependencies) and runs docker build with
      --build-arg base=<parent>
    - Publishes the result to the working repository
    - Records the layer's own diffs, i.e. the image diffs after its parent's
    """

    def __init__(self, engine: ContainerEngine, repository: WorkingRepository, composer: ImageComposer,
                 config: BuildConfig, hasher: Optional[ContentHasher] = None,
                 cancelled: Optional[threading.Event] = None):
        self.engine = engine
        self.repository = repository
        self.composer = composer
        self.hasher = hasher or ContentHasher()
        self.logger: logging.Logger = config.logger
        self.cancelled = cancelled or threading.Event()

    def build_base(self, spec: BaseImageSpec) -> BaseImage:
        """Resolve the base image: pull a reference or build the base context"""
        if spec.image:
            ref = spec.image
            try:
                if not self.engine.image_exists(ref):
                    self.logger.info("Pulling base image %s", ref)
                    self.engine.pull(ref)
            except EngineError as e:
                raise RepositoryError(BASE_IMAGE_NAME, f"cannot pull base image {ref}: {e}") from e
            info = self._inspect(BASE_IMAGE_NAME, ref)
            fingerprint = self.hasher.fingerprint_base(spec, info.image_id)
            return BaseImage(ref=ref, size=info.size, diff_ids=info.diff_ids, fingerprint=fingerprint)

        fingerprint = self.hasher.fingerprint_base(spec)
        ref = self.repository.base_ref(fingerprint)
        if self.repository.exists(ref, owner=BASE_IMAGE_NAME):
            self.logger.info("%s Reusing base image %s", ICON_REUSE, ref)
        else:
            self.logger.info("%s Building base image from %s", ICON_BUILD, spec.context)
            self._docker_build(BASE_IMAGE_NAME, spec.context, spec.dockerfile, ref,
                               dict(spec.build_args), fingerprint)
            self.repository.put(ref, owner=BASE_IMAGE_NAME)

        info = self._inspect(BASE_IMAGE_NAME, ref)
        return BaseImage(ref=ref, size=info.size, diff_ids=info.diff_ids, fingerprint=fingerprint)

    def build(self, spec: LayerSpec, fingerprint: str, base: BaseImage, closure: Sequence[BuiltLayer]) -> BuiltLayer:
        """Build (or reuse) one layer.

        closure: the built transitive dependencies of the layer, dependencies first.
        """
        if self.cancelled.is_set():
            raise BuildError(spec.name, "build cancelled")

        ref = self.repository.ref(spec.name, fingerprint)
        parent_diff_ids = self._parent_diff_ids(base, closure)

        cached = self.repository.exists(ref, owner=spec.name)
        if cached:
            self.logger.info("%s Reusing layer %s: %s", ICON_REUSE, spec.name, ref)
        else:
            parent_ref = self._parent_ref(spec, base, closure)
            self.logger.info("%s Building layer %s on %s", ICON_BUILD, spec.name, parent_ref)
            build_args = dict(spec.build_args)
            build_args[BASE_BUILD_ARG] = parent_ref
            self._docker_build(spec.name, spec.context, spec.dockerfile, ref, build_args, fingerprint)
            self.repository.put(ref, owner=spec.name)

        info = self._inspect(spec.name, ref)
        own = self._own_diff_ids(spec.name, info.diff_ids, parent_diff_ids)
        built = BuiltLayer(
            name=spec.name,
            ref=ref,
            size=info.size,
            fingerprint=fingerprint,
            diff_ids=own,
            cached=cached,
        )
        if not cached:
            self.logger.info("%s Built layer %s: %s (%s)", ICON_OK, spec.name, ref, human_size(info.size))
        return built

    def _docker_build(self, owner: str, context: str, dockerfile: str, ref: str, build_args, fingerprint: str):
        labels = {IMAGE_LABEL_LAYER: owner, IMAGE_LABEL_FINGERPRINT: fingerprint}
        try:
            self.engine.build(context, dockerfile, ref, build_args=build_args, labels=labels)
        except EngineError as e:
            raise BuildError(owner, f"docker build failed: {e}") from e

    def _inspect(self, owner: str, ref: str):
        try:
            return self.engine.inspect_image(ref)
        except EngineError as e:
            raise RepositoryError(owner, f"cannot inspect {ref}: {e}") from e

    @staticmethod
    def _parent_diff_ids(base: BaseImage, closure: Sequence[BuiltLayer]) -> Tuple[str, ...]:
        diff_ids: List[str] = list(base.diff_ids)
        for dep in closure:
            diff_ids.extend(dep.diff_ids)
        return tuple(diff_ids)

    def _parent_ref(self, spec: LayerSpec, base: BaseImage, closure: Sequence[BuiltLayer]) -> str:
        if not spec.dependencies:
            return base.ref
        if len(spec.dependencies) == 1:
            # a dependency image already carries base + its own closure, in order
            dep = spec.dependencies[0]
            return next(layer.ref for layer in closure if layer.name == dep)

        key = self.hasher.combine([base.fingerprint] + [layer.fingerprint for layer in closure])
        parent = self.repository.parent_ref(key)
        self.logger.info("   Composing parent image for %s from %s", spec.name,
                         ", ".join(layer.name for layer in closure))
        try:
            return self.composer.compose_parent(base, closure, parent)
        except CompositionError as e:
            raise BuildError(spec.name, f"cannot compose parent image: {e}") from e

    @staticmethod
    def _own_diff_ids(name: str, diff_ids: Sequence[str], parent_diff_ids: Sequence[str]) -> Tuple[str, ...]:
        prefix = tuple(diff_ids[:len(parent_diff_ids)])
        if prefix != tuple(parent_diff_ids):
            raise BuildError(
                name,
                f"layer image does not extend its parent; the Dockerfile must start with "
                f"'ARG {BASE_BUILD_ARG}' and 'FROM ${{{BASE_BUILD_ARG}}}'",
            )
        return tuple(diff_ids[len(parent_diff_ids):])
