"""Deterministic layer fingerprints.

A fingerprint is sha256 over a canonical byte stream built from:
  - the fingerprint schema version
  - the base image fingerprint
  - the dependency fingerprints, in declared order
  - the Dockerfile name and bytes (always, even when .dockerignore excludes it)
  - the sorted build args
  - every build-context file docker would send (sorted relative path, type,
    exec bit, content)

Modification times, owners and absolute paths never enter the hash, so the
same inputs give the same fingerprint on any host and in any build order.
"""

import hashlib
import os
import stat
from typing import Iterator, List, Mapping, Optional, Sequence

from docker.utils.build import exclude_paths

from config import BASE_IMAGE_NAME, DEFAULT_DOCKERFILE, BaseImageSpec, LayerSpec
from errors import BuildError

# Bump when the canonical stream changes; old cache entries become misses
FINGERPRINT_SCHEMA_VERSION = "2"

_CHUNK = 1024 * 1024


def _read_dockerignore(context_dir: str) -> List[str]:
    path = os.path.join(context_dir, '.dockerignore')
    if not os.path.isfile(path):
        return []
    patterns = []
    with open(path, 'r', encoding='utf-8') as f:
        for line in f:
            line = line.strip()
            if not line or line.startswith('#'):
                continue
            patterns.append(line)
    return patterns


def iter_context_files(context_dir: str, dockerfile: str = DEFAULT_DOCKERFILE) -> Iterator[str]:
    """Relative posix paths of the files docker sends for a build context, sorted

    .dockerignore is applied with docker's own matcher: patterns are anchored
    at the context root, '*' stays within one path segment and '**' spans any
    depth.
    """
    patterns = _read_dockerignore(context_dir)
    included = None
    if patterns:
        included = {p.replace(os.sep, '/') for p in exclude_paths(context_dir, list(patterns), dockerfile=dockerfile)}
    entries = []
    for root, dirs, files in os.walk(context_dir, followlinks=False):
        rel_root = os.path.relpath(root, context_dir)
        # symlinked directories are hashed as links, not walked
        for name in list(dirs):
            if os.path.islink(os.path.join(root, name)):
                files.append(name)
                dirs.remove(name)
        for name in files:
            rel = name if rel_root == '.' else f"{rel_root}/{name}"
            rel = rel.replace(os.sep, '/')
            if included is not None and rel not in included:
                continue
            entries.append(rel)
    return iter(sorted(entries))


class ContentHasher:
    """Pure fingerprinting of layer build inputs"""

    def _update_field(self, h, tag: str, value: str):
        data = value.encode('utf-8')
        h.update(f"{tag}:{len(data)}:".encode('ascii'))
        h.update(data)
        h.update(b"\n")

    def _hash_bytes(self, h, path: str, owner: str, label: str):
        try:
            with open(path, 'rb') as f:
                for chunk in iter(lambda: f.read(_CHUNK), b''):
                    h.update(chunk)
        except OSError as e:
            raise BuildError(owner, f"cannot read {label}: {e}") from e
        h.update(b"\n")

    def _hash_context(self, h, context_dir: str, dockerfile: str, owner: str):
        if not os.path.isdir(context_dir):
            raise BuildError(owner, f"build context {context_dir} does not exist")
        count = 0
        for rel in iter_context_files(context_dir, dockerfile):
            path = os.path.join(context_dir, *rel.split('/'))
            st = os.lstat(path)
            if stat.S_ISLNK(st.st_mode):
                self._update_field(h, "link", rel)
                self._update_field(h, "target", os.readlink(path))
            elif stat.S_ISREG(st.st_mode):
                executable = "x" if st.st_mode & stat.S_IXUSR else "-"
                self._update_field(h, "file", rel)
                h.update(f"mode:{executable}:size:{st.st_size}\n".encode('ascii'))
                self._hash_bytes(h, path, owner, f"{rel} in build context")
            count += 1
        h.update(f"files:{count}\n".encode('ascii'))

    def _hash_common(self, h, context_dir: str, dockerfile: str, build_args: Mapping[str, str], owner: str):
        # docker always sends the Dockerfile, whatever .dockerignore says
        self._update_field(h, "dockerfile", dockerfile)
        path = os.path.join(context_dir, dockerfile)
        if os.path.isfile(path):
            h.update(f"dockerfile-size:{os.path.getsize(path)}\n".encode('ascii'))
            self._hash_bytes(h, path, owner, dockerfile)
        else:
            # the build itself reports the missing Dockerfile
            h.update(b"dockerfile-missing\n")
        for key in sorted(build_args):
            self._update_field(h, "arg", f"{key}={build_args[key]}")

    def fingerprint(self, spec: LayerSpec, dependency_fingerprints: Sequence[str], base_fingerprint: str) -> str:
        """Fingerprint of a layer; dependency fingerprints must follow spec.dependencies order"""
        if len(dependency_fingerprints) != len(spec.dependencies):
            raise ValueError(
                f"layer '{spec.name}' has {len(spec.dependencies)} dependencies, "
                f"got {len(dependency_fingerprints)} fingerprints"
            )
        h = hashlib.sha256()
        self._update_field(h, "schema", FINGERPRINT_SCHEMA_VERSION)
        self._update_field(h, "base", base_fingerprint)
        for dep_fp in dependency_fingerprints:
            self._update_field(h, "dep", dep_fp)
        self._hash_common(h, spec.context, spec.dockerfile, spec.build_args, spec.name)
        self._hash_context(h, spec.context, spec.dockerfile, spec.name)
        return h.hexdigest()

    def fingerprint_base(self, base: BaseImageSpec, image_id: Optional[str] = None) -> str:
        """Fingerprint of the base; a pulled base is keyed by its resolved image id too"""
        h = hashlib.sha256()
        self._update_field(h, "schema", FINGERPRINT_SCHEMA_VERSION)
        if base.image:
            self._update_field(h, "image", base.image)
            if image_id:
                self._update_field(h, "id", image_id)
        else:
            self._hash_common(h, base.context, base.dockerfile, base.build_args, BASE_IMAGE_NAME)
            self._hash_context(h, base.context, base.dockerfile, BASE_IMAGE_NAME)
        return h.hexdigest()

    def combine(self, fingerprints: Sequence[str]) -> str:
        """Key for an image composed from several fingerprints, order-sensitive"""
        h = hashlib.sha256()
        self._update_field(h, "schema", FINGERPRINT_SCHEMA_VERSION)
        for fp in fingerprints:
            self._update_field(h, "part", fp)
        return h.hexdigest()
