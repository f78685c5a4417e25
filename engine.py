"""
Container engine capability used by the layered build.

Everything that talks to the Docker daemon or a registry goes through a
ContainerEngine. DockerCLI drives the docker command line the same way the
rest of the tooling does (subprocess plus the optional sudo prefix); tests
substitute an in-memory engine.
"""

import json
import logging
import os
import subprocess
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Dict, List, Mapping, Optional, Sequence, Tuple

from errors import EngineError
from utils import sudo_prefix, tail_lines

DAEMON_ERROR_PREFIX = "Error response from daemon:"


@dataclass(frozen=True)
class ImageInfo:
    ref: str
    image_id: str
    size: int
    diff_ids: Tuple[str, ...]
    env: Tuple[str, ...] = ()


@dataclass(frozen=True)
class ExecResult:
    exit_code: int
    stdout: str
    stderr: str


class ContainerEngine(ABC):
    @abstractmethod
    def image_exists(self, ref: str) -> bool:
        """Check whether the image is present in the local image store"""

    @abstractmethod
    def remote_image_exists(self, ref: str) -> bool:
        """Check whether the image exists in its remote registry"""

    @abstractmethod
    def pull(self, ref: str) -> None: ...

    @abstractmethod
    def push(self, ref: str) -> None: ...

    @abstractmethod
    def build(self, context_dir: str, dockerfile: str, tag: str,
              build_args: Optional[Mapping[str, str]] = None,
              labels: Optional[Mapping[str, str]] = None) -> None: ...

    @abstractmethod
    def tag(self, source: str, target: str) -> None: ...

    @abstractmethod
    def inspect_image(self, ref: str) -> ImageInfo: ...

    @abstractmethod
    def save(self, refs: Sequence[str], path: str) -> None:
        """Write the images to path in `docker save` archive format"""

    @abstractmethod
    def load(self, path: str) -> None: ...

    @abstractmethod
    def create_container(self, image: str, command: Sequence[str], name: Optional[str] = None) -> str:
        """Create a container and return its id"""

    @abstractmethod
    def start_container(self, container: str) -> None: ...

    @abstractmethod
    def exec_in_container(self, container: str, command: Sequence[str],
                          env: Optional[Mapping[str, str]] = None,
                          timeout: Optional[int] = None) -> ExecResult: ...

    @abstractmethod
    def remove_container(self, container: str) -> None: ...


class DockerCLI(ContainerEngine):
    """ContainerEngine backed by the docker command line client"""

    def __init__(self, use_sudo: Optional[bool] = None, docker_config: Optional[str] = None,
                 logger: Optional[logging.Logger] = None):
        self.use_sudo = use_sudo
        self.docker_config = docker_config
        self.logger = logger or logging.getLogger("layered_img_build.engine")

    def _prefix(self) -> List[str]:
        if self.use_sudo is None:
            return list(sudo_prefix())
        return ['sudo', '-n', '-E'] if self.use_sudo else []

    def _cmd(self, args: Sequence[str]) -> List[str]:
        cmd = self._prefix() + ['docker']
        if self.docker_config:
            cmd += ['--config', self.docker_config]
        return cmd + list(args)

    def _docker(self, args: Sequence[str], check: bool = True, timeout: Optional[int] = None,
                env: Optional[Dict[str, str]] = None) -> subprocess.CompletedProcess:
        cmd = self._cmd(args)
        self.logger.debug("running: %s", ' '.join(cmd))
        try:
            result = subprocess.run(cmd, env=env, text=True, capture_output=True, timeout=timeout)
        except subprocess.TimeoutExpired as e:
            raise EngineError(cmd, -1, f"timed out after {timeout}s") from e
        except OSError as e:
            raise EngineError(cmd, -1, str(e)) from e
        if check and result.returncode != 0:
            raise EngineError(cmd, result.returncode, result.stderr or result.stdout)
        return result

    def image_exists(self, ref: str) -> bool:
        result = self._docker(['image', 'inspect', '--format', '{{.Id}}', ref], check=False)
        return result.returncode == 0 and bool(result.stdout.strip())

    def remote_image_exists(self, ref: str) -> bool:
        return self._docker(['manifest', 'inspect', ref], check=False).returncode == 0

    def pull(self, ref: str) -> None:
        self._docker(['pull', '--quiet', ref])

    def push(self, ref: str) -> None:
        self._docker(['push', '--quiet', ref])

    def build(self, context_dir: str, dockerfile: str, tag: str,
              build_args: Optional[Mapping[str, str]] = None,
              labels: Optional[Mapping[str, str]] = None) -> None:
        args = ['build', '-f', os.path.join(context_dir, dockerfile), '-t', tag]
        for key, value in sorted((build_args or {}).items()):
            args += ['--build-arg', f'{key}={value}']
        for key, value in sorted((labels or {}).items()):
            args += ['--label', f'{key}={value}']
        args.append(context_dir)

        env = os.environ.copy()
        env.setdefault('DOCKER_BUILDKIT', '1')
        env.setdefault('BUILDKIT_PROGRESS', 'plain')
        result = self._docker(args, check=False, env=env)
        if result.returncode != 0:
            output = result.stderr or result.stdout
            for line in tail_lines(output):
                self.logger.debug("   | %s", line)
            raise EngineError(self._cmd(args), result.returncode, output)

    def tag(self, source: str, target: str) -> None:
        self._docker(['tag', source, target])

    def inspect_image(self, ref: str) -> ImageInfo:
        result = self._docker(['image', 'inspect', '--format', '{{json .}}', ref])
        data = json.loads(result.stdout)
        if isinstance(data, list):
            data = data[0]
        config = data.get('Config') or {}
        return ImageInfo(
            ref=ref,
            image_id=data.get('Id', ''),
            size=int(data.get('Size') or 0),
            diff_ids=tuple((data.get('RootFS') or {}).get('Layers') or ()),
            env=tuple(config.get('Env') or ()),
        )

    def save(self, refs: Sequence[str], path: str) -> None:
        self._docker(['save', '-o', path] + list(refs))

    def load(self, path: str) -> None:
        self._docker(['load', '--quiet', '-i', path])

    def create_container(self, image: str, command: Sequence[str], name: Optional[str] = None) -> str:
        args = ['create']
        if name:
            args += ['--name', name]
        args += [image] + list(command)
        container = self._docker(args).stdout.strip()
        if not container:
            raise EngineError(self._cmd(args), 0, "docker create did not print a container id")
        return container

    def start_container(self, container: str) -> None:
        self._docker(['start', container])

    def exec_in_container(self, container: str, command: Sequence[str],
                          env: Optional[Mapping[str, str]] = None,
                          timeout: Optional[int] = None) -> ExecResult:
        args = ['exec']
        for key, value in sorted((env or {}).items()):
            args += ['-e', f'{key}={value}']
        args += [container] + list(command)
        result = self._docker(args, check=False, timeout=timeout)
        # 125 and daemon errors come from docker exec itself; 126 and 127 belong to the command under test
        daemon_error = not result.stdout and result.stderr.startswith(DAEMON_ERROR_PREFIX)
        if result.returncode == 125 or (result.returncode != 0 and daemon_error):
            raise EngineError(self._cmd(args), result.returncode, result.stderr)
        return ExecResult(result.returncode, result.stdout, result.stderr)

    def remove_container(self, container: str) -> None:
        self._docker(['rm', '-f', '-v', container])
