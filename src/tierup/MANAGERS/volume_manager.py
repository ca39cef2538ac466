"""
Volume management for services: named volume identity, exclusive mounts, and mount links.
"""
import json
import logging
import os
import posixpath
import shutil
import threading
import uuid
from dataclasses import dataclass
from typing import Dict, List, Optional

from ..errors import InvalidMountTarget, VolumeInUse
from ..MODELS.runtime_state import utc_now
from ..MODELS.service_spec import VolumeMount

logger = logging.getLogger(__name__)

META_FILE = "meta.json"
DATA_DIR = "_data"


def container_target(target: str, service: str) -> str:
    """
    Normalizes a mount target to a path relative to the service's root directory.

    :param target: Absolute path inside the "container".
    :param service: The service that owns the mount, for error reporting.
    :return: The normalized target without its leading slash.
    :raises InvalidMountTarget: If the target is not an absolute path below the root, or contains ``..``.
    """
    path = target.replace('\\', '/')
    if not path.startswith('/') or '..' in path.split('/'):
        raise InvalidMountTarget(service, target)
    relative = posixpath.normpath(path).lstrip('/')
    if not relative or relative == '.':
        raise InvalidMountTarget(service, target)
    return relative


@dataclass(frozen=True)
class NamedVolume:
    """A named volume as stored on disk."""

    name: str
    id: str
    path: str
    created_at: str


class VolumeManager:
    """
    Manages named volumes and the links that mount them into services.

    Each volume lives under ``<volumes_root>/<name>`` with its contents in
    ``_data`` and its identity in ``meta.json``; the identity is read back from
    disk, so it survives restarts and new manager instances.
    """
    def __init__(self, base_dir: str = ".", state_dir: str = ".tierup"):
        """
        Initializes the volume manager.

        :param base_dir: The base directory for resolving relative paths.
        :param state_dir: Directory (relative to base_dir) holding tierup's own state.
        """
        self.base_dir = os.path.abspath(base_dir)
        self.state_root = os.path.abspath(os.path.join(base_dir, state_dir))
        self.volumes_root = os.path.join(self.state_root, "volumes")
        self.rootfs_root = os.path.join(self.state_root, "rootfs")
        os.makedirs(self.volumes_root, exist_ok=True)

        self._lock = threading.Lock()
        self._holders: Dict[str, str] = {}  # volume -> service

    def create_volume(self, name: str) -> NamedVolume:
        """
        Creates a volume, or returns the existing one with the same name.
        """
        existing = self.get_volume(name)
        if existing:
            return existing

        volume_dir = os.path.join(self.volumes_root, name)
        os.makedirs(os.path.join(volume_dir, DATA_DIR), exist_ok=True)
        meta = {"name": name, "id": uuid.uuid4().hex, "created_at": utc_now()}
        with open(os.path.join(volume_dir, META_FILE), 'w') as f:
            json.dump(meta, f)

        logger.info("Created volume %s (%s)", name, meta["id"])
        return self._from_meta(meta)

    def get_volume(self, name: str) -> Optional[NamedVolume]:
        meta_path = os.path.join(self.volumes_root, name, META_FILE)
        if not os.path.exists(meta_path):
            return None
        with open(meta_path, 'r') as f:
            return self._from_meta(json.load(f))

    def list_volumes(self) -> List[NamedVolume]:
        volumes = []
        for name in sorted(os.listdir(self.volumes_root)):
            volume = self.get_volume(name)
            if volume:
                volumes.append(volume)
        return volumes

    def remove_volume(self, name: str, force: bool = False) -> bool:
        """
        Removes a volume and its contents. This is the only way a volume is destroyed.

        :param name: Name of the volume.
        :param force: Remove even if a service currently mounts it.
        :return: True if a volume was removed.
        :raises VolumeInUse: If the volume is mounted and ``force`` is not set.
        """
        with self._lock:
            holder = self._holders.get(name)
            if holder and not force:
                raise VolumeInUse(name, holder)
            self._holders.pop(name, None)

        volume_dir = os.path.join(self.volumes_root, name)
        if not os.path.exists(volume_dir):
            return False
        shutil.rmtree(volume_dir)
        logger.info("Removed volume %s", name)
        return True

    def acquire(self, name: str, service: str) -> None:
        """
        Marks a volume as mounted by ``service``. A service may re-acquire its own volume.

        :raises VolumeInUse: If another service holds the volume.
        """
        with self._lock:
            holder = self._holders.get(name)
            if holder is not None and holder != service:
                raise VolumeInUse(name, holder)
            self._holders[name] = service

    def release(self, name: str, service: str) -> None:
        with self._lock:
            if self._holders.get(name) == service:
                del self._holders[name]

    def holder_of(self, name: str) -> Optional[str]:
        with self._lock:
            return self._holders.get(name)

    def prepare_mounts(self, service: str, mounts: List[VolumeMount]) -> Dict[str, str]:
        """
        Links every mount target of a service to its source.

        Targets are placed under ``<state_dir>/rootfs/<service>``.

        :param service: The service being launched.
        :param mounts: Its volume mounts.
        :return: Mapping of container target path to resolved source path.
        """
        resolved = {}
        for mount in mounts:
            if mount.is_named:
                source_path = self.create_volume(mount.source).path
            else:
                source_path = self.resolve_source(mount.source)
                os.makedirs(source_path, exist_ok=True)
            target_path = self.resolve_target(mount.target, service)

            target_parent = os.path.dirname(target_path)
            # the parent may be the link of another mount
            rootfs = os.path.realpath(self.rootfs_of(service))
            if os.path.commonpath([rootfs, os.path.realpath(target_parent)]) != rootfs:
                raise InvalidMountTarget(service, mount.target)
            os.makedirs(target_parent, exist_ok=True)

            if os.path.islink(target_path):
                if os.path.realpath(target_path) == os.path.realpath(source_path):
                    resolved[mount.target] = source_path
                    continue
                os.unlink(target_path)
            elif os.path.isdir(target_path):
                shutil.rmtree(target_path)
            elif os.path.exists(target_path):
                os.remove(target_path)

            os.symlink(source_path, target_path, target_is_directory=True)
            logger.debug("Mapped volume %s -> %s", source_path, target_path)
            resolved[mount.target] = source_path
        return resolved

    def resolve_source(self, source: str) -> str:
        """
        Resolves the source path of a mount.

        :param source: The source path or volume name.
        :return: The absolute path to the source.
        """
        if not os.path.isabs(source) and not source.startswith(('.', '~')) and '/' not in source:
            return os.path.join(self.volumes_root, source, DATA_DIR)
        return os.path.abspath(os.path.join(self.base_dir, os.path.expanduser(source)))

    def resolve_target(self, target: str, service: str) -> str:
        """
        Resolves the target path of a mount inside the service's root directory.

        :param target: The target path inside the "container".
        :param service: The service that owns the mount.
        :return: The absolute path to the target.
        :raises InvalidMountTarget: If the target would leave the service's root directory.
        """
        return os.path.join(self.rootfs_of(service), *container_target(target, service).split('/'))

    def rootfs_of(self, service: str) -> str:
        return os.path.join(self.rootfs_root, service)

    def _from_meta(self, meta: Dict[str, str]) -> NamedVolume:
        return NamedVolume(
            name=meta["name"],
            id=meta["id"],
            path=os.path.join(self.volumes_root, meta["name"], DATA_DIR),
            created_at=meta["created_at"],
        )
