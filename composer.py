"""
Image composition: stack the base image and the built layers into one image.

Works on `docker save` archives. The source archive holds the base image and
every layer image; each layer contributes only its own diffs (the ones on top
of the parent it was built from). The output archive is written with fixed
tar metadata and a canonical config so the same inputs always load as the same
image id.
"""

import copy
import hashlib
import io
import json
import logging
import os
import tarfile
import tempfile
from typing import Dict, List, Optional, Sequence, Tuple

from config import ICON_COMPOSE, BaseImage, BuiltLayer, ComposedImage
from engine import ContainerEngine
from errors import CompositionError, EngineError
from utils import split_image_ref

MANIFEST = "manifest.json"


def canonical_json(data) -> bytes:
    return json.dumps(data, sort_keys=True, separators=(',', ':')).encode('utf-8')


class _HashingReader:
    """File wrapper that hashes everything read through it"""

    def __init__(self, fileobj):
        self._fileobj = fileobj
        self.sha256 = hashlib.sha256()

    def read(self, size: int = -1) -> bytes:
        data = self._fileobj.read(size)
        self.sha256.update(data)
        return data


def familiar_ref(ref: str) -> str:
    """A reference in the form docker writes into RepoTags"""
    if '@' in ref:
        return ref
    name, tag = split_image_ref(ref)
    for prefix in ('docker.io/library/', 'index.docker.io/library/', 'docker.io/', 'index.docker.io/'):
        if name.startswith(prefix):
            name = name[len(prefix):]
            break
    return f"{name}:{tag}"


class ImageArchive:
    """Read access to a `docker save` archive.

    Images are found by repo tag, by config digest, or by their full diff id
    list. The image id reported by `docker image inspect` is only the config
    digest with the classic image store; the containerd store reports the
    manifest digest instead, so tags are tried first.
    """

    def __init__(self, path: str):
        self.path = path
        try:
            self._tar = tarfile.open(path, 'r')
            self.manifest = json.loads(self.read(MANIFEST))
        except (tarfile.TarError, OSError, KeyError, ValueError) as e:
            raise CompositionError(f"cannot read image archive {path}: {e}") from e
        self._entries: Dict[str, dict] = {}
        self._configs: Dict[str, dict] = {}
        self._by_diff_ids: Dict[Tuple[str, ...], dict] = {}
        try:
            for entry in self.manifest:
                config_name = entry['Config']
                config_bytes = self.read(config_name)
                config = json.loads(config_bytes)
                diff_ids = tuple((config.get('rootfs') or {}).get('diff_ids') or ())
                self._configs[config_name] = config
                self._entries["sha256:" + hashlib.sha256(config_bytes).hexdigest()] = entry
                for repo_tag in entry.get('RepoTags') or []:
                    self._entries[familiar_ref(repo_tag)] = entry
                self._by_diff_ids.setdefault(diff_ids, entry)
        except (tarfile.TarError, OSError, KeyError, TypeError, AttributeError, ValueError) as e:
            self._tar.close()
            raise CompositionError(f"invalid image archive {path}: {e!r}") from e

    def close(self):
        self._tar.close()

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()

    def read(self, name: str) -> bytes:
        member = self._tar.getmember(name)
        fileobj = self._tar.extractfile(member)
        if fileobj is None:
            raise KeyError(name)
        return fileobj.read()

    def entry(self, ref: str, image_id: Optional[str] = None,
              diff_ids: Optional[Sequence[str]] = None) -> dict:
        """Manifest entry for ref; image_id and diff_ids are fallbacks for untagged images"""
        key = ref if ref.startswith('sha256:') else familiar_ref(ref)
        entry = self._entries.get(key)
        if entry is None and image_id:
            entry = self._entries.get(image_id)
        if entry is None and diff_ids:
            entry = self._by_diff_ids.get(tuple(diff_ids))
        if entry is None:
            raise CompositionError(f"image {ref} is missing from archive {self.path}")
        return entry

    def config(self, ref: str, image_id: Optional[str] = None,
               diff_ids: Optional[Sequence[str]] = None) -> dict:
        return self._configs[self.entry(ref, image_id, diff_ids)['Config']]

    def layer_paths(self, ref: str, image_id: Optional[str] = None,
                    diff_ids: Optional[Sequence[str]] = None) -> Dict[str, str]:
        """Map of diff id to layer tar path for one image"""
        entry = self.entry(ref, image_id, diff_ids)
        image_diff_ids = self._configs[entry['Config']].get('rootfs', {}).get('diff_ids', [])
        layers = entry.get('Layers', [])
        if len(image_diff_ids) != len(layers):
            raise CompositionError(
                f"image {ref} lists {len(layers)} layer blobs for {len(image_diff_ids)} diff ids"
            )
        return dict(zip(image_diff_ids, layers))

    def member(self, name: str) -> Tuple[tarfile.TarInfo, io.BufferedReader]:
        member = self._tar.getmember(name)
        fileobj = self._tar.extractfile(member)
        if fileobj is None:
            raise KeyError(name)
        return member, fileobj


def merge_env(base_env: Sequence[str], layer_envs: Sequence[Sequence[str]]) -> List[str]:
    """Merge image Env lists: later layers win, PATH entries are unioned in order"""
    merged: Dict[str, str] = {}
    for item in base_env:
        key, _, value = item.partition('=')
        merged[key] = value
    for env in layer_envs:
        for item in env:
            key, _, value = item.partition('=')
            if key == 'PATH' and 'PATH' in merged:
                parts = merged['PATH'].split(':')
                for entry in value.split(':'):
                    if entry and entry not in parts:
                        parts.append(entry)
                merged['PATH'] = ':'.join(p for p in parts if p)
            else:
                merged[key] = value
    return [f"{k}={v}" for k, v in merged.items()]


def _tarinfo(name: str, size: int, mode: int = 0o644, kind: bytes = tarfile.REGTYPE) -> tarfile.TarInfo:
    info = tarfile.TarInfo(name)
    info.size = size
    info.mode = mode
    info.type = kind
    info.mtime = 0
    info.uid = info.gid = 0
    info.uname = info.gname = ""
    return info


class ImageComposer:
    """Layers each built layer's filesystem changes on top of the base image"""

    def __init__(self, engine: ContainerEngine, logger: Optional[logging.Logger] = None):
        self.engine = engine
        self.logger = logger or logging.getLogger("layered_img_build.composer")

    def compose(self, base: BaseImage, layers: Sequence[BuiltLayer], tag: str) -> ComposedImage:
        """Compose base + layers (dependencies first) and load the result as tag"""
        self.logger.info("%s Composing %d layer(s) onto %s -> %s", ICON_COMPOSE, len(layers), base.ref, tag)
        with tempfile.TemporaryDirectory(prefix="layerimg_compose_") as work:
            source = os.path.join(work, "source.tar")
            target = os.path.join(work, "composed.tar")
            refs = [base.ref] + [layer.ref for layer in layers]
            try:
                image_ids = {ref: self.engine.inspect_image(ref).image_id for ref in dict.fromkeys(refs)}
                self.engine.save(list(dict.fromkeys(refs)), source)
            except EngineError as e:
                raise CompositionError(f"cannot export images for composition: {e}") from e

            with ImageArchive(source) as archive:
                image_id, diff_ids = self.write_archive(archive, image_ids, base, layers, tag, target)

            try:
                self.engine.load(target)
                info = self.engine.inspect_image(tag)
            except EngineError as e:
                raise CompositionError(f"cannot load composed image {tag}: {e}") from e

        if info.image_id and info.image_id != image_id:
            # the containerd image store reports the manifest digest
            self.logger.debug("engine reports %s as %s (config digest %s)", tag, info.image_id, image_id)
        self.logger.info("%s Composed %s (%s)", ICON_COMPOSE, tag, image_id[:19])
        return ComposedImage(ref=tag, image_id=image_id, size=info.size, diff_ids=diff_ids)

    def compose_parent(self, base: BaseImage, layers: Sequence[BuiltLayer], tag: str) -> str:
        """Compose an intermediate parent image unless it already exists locally"""
        try:
            if self.engine.image_exists(tag):
                return tag
        except EngineError as e:
            raise CompositionError(f"cannot inspect parent image {tag}: {e}") from e
        return self.compose(base, layers, tag).ref

    def write_archive(self, archive: ImageArchive, image_ids: Dict[str, str], base: BaseImage,
                      layers: Sequence[BuiltLayer], tag: str, target: str) -> Tuple[str, Tuple[str, ...]]:
        """Write the composed `docker load` archive; returns (image id, diff ids)"""
        base_key = (base.ref, image_ids.get(base.ref), base.diff_ids)
        base_config = archive.config(*base_key)
        base_diff_ids = list(base_config.get('rootfs', {}).get('diff_ids', []))
        if tuple(base_diff_ids) != tuple(base.diff_ids):
            raise CompositionError(f"base image {base.ref} changed since it was resolved")

        # (diff id, source member path) in composition order
        blobs: List[Tuple[str, str]] = []
        base_paths = archive.layer_paths(*base_key)
        blobs.extend((diff_id, base_paths[diff_id]) for diff_id in base_diff_ids)

        history = list(base_config.get('history', []))
        created = base_config.get('created')
        layer_envs = []
        for layer in layers:
            layer_id = image_ids.get(layer.ref)
            paths = archive.layer_paths(layer.ref, layer_id)
            for diff_id in layer.diff_ids:
                if diff_id not in paths:
                    raise CompositionError(f"layer '{layer.name}': diff {diff_id} is not part of {layer.ref}")
                blobs.append((diff_id, paths[diff_id]))
                entry = {'created_by': f"layered-img-build: layer {layer.name} ({layer.fingerprint[:12]})"}
                if created:
                    entry['created'] = created
                history.append(entry)
            layer_envs.append(archive.config(layer.ref, layer_id).get('config', {}).get('Env') or [])

        config = copy.deepcopy(base_config)
        config['rootfs'] = {'type': 'layers', 'diff_ids': [d for d, _ in blobs]}
        config['history'] = history
        container_config = config.setdefault('config', {})
        env = merge_env(container_config.get('Env') or [], layer_envs)
        if env:
            container_config['Env'] = env
        config_bytes = canonical_json(config)
        config_hex = hashlib.sha256(config_bytes).hexdigest()

        layer_names = []
        with tarfile.open(target, 'w', format=tarfile.USTAR_FORMAT) as out:
            for diff_id, path in blobs:
                hex_id = diff_id.split(':', 1)[-1]
                name = f"{hex_id}/layer.tar"
                layer_names.append(name)
                if layer_names.count(name) > 1:
                    # a repeated diff is stored once and referenced again
                    continue
                out.addfile(_tarinfo(f"{hex_id}", 0, 0o755, tarfile.DIRTYPE))
                try:
                    member, fileobj = archive.member(path)
                except (KeyError, tarfile.TarError) as e:
                    raise CompositionError(f"layer blob {path} is unreadable: {e}") from e
                reader = _HashingReader(fileobj)
                out.addfile(_tarinfo(name, member.size), reader)
                if "sha256:" + reader.sha256.hexdigest() != diff_id:
                    raise CompositionError(f"layer blob {path} does not match its diff id {diff_id}")

            out.addfile(_tarinfo(f"{config_hex}.json", len(config_bytes)), io.BytesIO(config_bytes))
            manifest = canonical_json([{'Config': f"{config_hex}.json", 'RepoTags': [tag], 'Layers': layer_names}])
            out.addfile(_tarinfo(MANIFEST, len(manifest)), io.BytesIO(manifest))

        return "sha256:" + config_hex, tuple(d for d, _ in blobs)
