from functools import lru_cache
from typing import List, Tuple
import os
import re
import shutil
import string
import subprocess
import uuid


# Docker repository path component (lowercase, separators between alphanumerics)
_NAME_COMPONENT_RE = re.compile(r'^[a-z0-9]+(?:(?:[._]|__|-+)[a-z0-9]+)*$')


def can_run(cmd: list) -> bool:
    try:
        r = subprocess.run(cmd, stdout=subprocess.DEVNULL, stderr=subprocess.DEVNULL, timeout=3)
        return r.returncode == 0
    except (OSError, subprocess.SubprocessError):
        return False


@lru_cache(maxsize=1)
def sudo_prefix() -> Tuple[str, ...]:
    """Choose whether to use sudo for Docker commands.

    Strategy:
    - If NO_SUDO=1 is set, never use sudo.
    - If running as root, don't use sudo.
    - If current user can talk to Docker daemon without sudo, don't use sudo.
    - If sudo is available and can run non-interactively, use sudo -n -E.
    - Otherwise, don't use sudo (caller will see a Docker permission error).

    The probe runs once per process; concurrent layer builds share the answer.
    """
    if os.environ.get("NO_SUDO", "").strip() in ("1", "true", "True"):
        return ()

    if hasattr(os, "geteuid") and os.geteuid() == 0:
        return ()

    if shutil.which("docker") and can_run(["docker", "info"]):
        return ()

    if shutil.which("sudo") and can_run(["sudo", "-n", "true"]):
        return ("sudo", "-n", "-E")

    return ()


def is_valid_name_component(name: str) -> bool:
    return bool(_NAME_COMPONENT_RE.match(name))


def container_name(layer_name: str, prefix: str = "layerimg") -> str:
    """Unique, docker-safe container name for an ephemeral test container"""
    allowed = string.ascii_letters + string.digits + '._-'
    safe = ''.join(ch if ch in allowed else '_' for ch in layer_name).strip('._-') or 'layer'
    return f"{prefix}_{safe}_{uuid.uuid4().hex[:8]}"


def split_image_ref(ref: str) -> Tuple[str, str]:
    """Split an image reference into (name, tag).

    The last ':' after the last '/' separates the tag; a digest reference keeps
    its digest as the tag part.
    """
    if '@' in ref:
        name, digest = ref.split('@', 1)
        return name, digest
    last_slash = ref.rfind('/')
    last_colon = ref.rfind(':')
    if last_colon > last_slash:
        return ref[:last_colon], ref[last_colon + 1:]
    return ref, 'latest'


def names_registry(repository: str) -> bool:
    """True when the first path component of a repository is a registry host.

    Mirrors docker's own rule: the component must contain '.' or ':' or be
    'localhost'.
    """
    if '/' not in repository:
        return False
    host = repository.split('/', 1)[0]
    return '.' in host or ':' in host or host == 'localhost'


def human_size(size: int) -> str:
    value = float(size)
    if value < 1024:
        return f"{size} B"
    for unit in ("KiB", "MiB"):
        value /= 1024
        if value < 1024:
            return f"{value:.1f} {unit}"
    return f"{value / 1024:.1f} GiB"


def tail_lines(text: str, count: int = 20) -> List[str]:
    lines = [ln for ln in (text or "").splitlines() if ln.strip()]
    return lines[-count:]
