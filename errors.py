from typing import Dict, List, Optional, Sequence


class LayeredBuildError(Exception):
    """Base class for all errors raised by the layered build engine"""


class ConfigurationError(LayeredBuildError):
    """The build definition is invalid (cycle, unknown dependency, duplicate name, ...)"""

    def __init__(self, message: str, layer: Optional[str] = None):
        super().__init__(message)
        self.layer = layer


class LayerError(LayeredBuildError):
    """An error scoped to a single layer"""

    def __init__(self, layer: str, message: str):
        super().__init__(f"layer '{layer}': {message}")
        self.layer = layer
        self.reason = message


class BuildError(LayerError):
    pass


class RepositoryError(LayerError):
    pass


class RunnerError(LayerError):
    pass


class CompositionError(LayeredBuildError):
    pass


class PartialBuildError(LayeredBuildError):
    """Summary error for a build that produced only a partial result"""

    def __init__(self, failed: Dict[str, str], skipped: Sequence[str], message: Optional[str] = None):
        self.failed = dict(failed)
        self.skipped: List[str] = list(skipped)
        if message is None:
            parts = [f"{len(self.failed)} layer(s) failed"]
            if self.failed:
                parts[0] += f" ({', '.join(self.failed)})"
            if self.skipped:
                parts.append(f"{len(self.skipped)} skipped ({', '.join(self.skipped)})")
            message = "build failed: " + "; ".join(parts)
        super().__init__(message)


class EngineError(Exception):
    """A container engine command failed"""

    def __init__(self, args: Sequence[str], returncode: int, stderr: str = ""):
        self.cmd = list(args)
        self.returncode = returncode
        self.stderr = (stderr or "").strip()
        detail = self.stderr.splitlines()[-1] if self.stderr else "no output"
        super().__init__(f"`{' '.join(self.cmd)}` exited with {returncode}: {detail}")


class AcceptanceTestError(LayeredBuildError):
    """Layer tests failed (logically or through test infrastructure)"""

    def __init__(self, failures: int, layers: Sequence[str]):
        self.failures = failures
        self.layers = list(layers)
        super().__init__(f"{failures} layer test(s) failed in: {', '.join(self.layers)}")
