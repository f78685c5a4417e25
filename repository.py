import logging
from typing import Optional

from config import BASE_IMAGE_NAME, PARENT_IMAGE_NAME, BuildConfig
from engine import ContainerEngine
from errors import EngineError, RepositoryError
from utils import names_registry


class WorkingRepository:
    """Content-addressed image store for layer cache entries.

    Entries are addressed as {repository}/{name}:{fingerprint}. Writes are
    put-if-absent: a tag that already exists remotely is never pushed again,
    and two builders racing on the same fingerprint push identical content.
    """

    def __init__(self, engine: ContainerEngine, config: BuildConfig):
        self.engine = engine
        self.repository = config.repository.rstrip('/')
        self.remote = config.push if config.push is not None else names_registry(self.repository)
        self.logger: logging.Logger = config.logger

    def ref(self, name: str, fingerprint: str) -> str:
        return f"{self.repository}/{name}:{fingerprint}"

    def base_ref(self, fingerprint: str) -> str:
        return self.ref(BASE_IMAGE_NAME, fingerprint)

    def parent_ref(self, key: str) -> str:
        return self.ref(PARENT_IMAGE_NAME, key)

    def exists(self, ref: str, owner: Optional[str] = None) -> bool:
        """True when the entry is usable locally, pulling it from the remote if needed"""
        try:
            if self.engine.image_exists(ref):
                return True
            if not self.remote:
                return False
            if not self.engine.remote_image_exists(ref):
                return False
            self.logger.debug("pulling cache entry %s", ref)
            self.engine.pull(ref)
            return True
        except EngineError as e:
            raise RepositoryError(owner or ref, f"cannot read cache entry {ref}: {e}") from e

    def put(self, ref: str, owner: Optional[str] = None) -> bool:
        """Publish a locally built entry. Returns False when it was already present."""
        if not self.remote:
            return True
        try:
            if self.engine.remote_image_exists(ref):
                self.logger.debug("cache entry %s already present, not pushing", ref)
                return False
            self.engine.push(ref)
            return True
        except EngineError as e:
            raise RepositoryError(owner or ref, f"cannot push cache entry {ref}: {e}") from e
