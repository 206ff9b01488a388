"""
Device names on the worker instance.

Picking a free /dev/sd? name and attaching a volume to it is a
read-then-write sequence, so callers hold a per-host lease across both.
"""

from contextlib import contextmanager
import logging
import threading
from typing import Dict, Iterable, Iterator, Set

from .errors import RemoteExecutionError, ResourceExhaustedError
from .remote import RemoteExecutor, run_remote

logger = logging.getLogger(__name__)

DEVICE_PREFIX = "/dev/sd"
DEVICE_SUFFIXES = "ijklmnopqrstuvwxyz"

# Whole-disk devices only, partitions end with a digit
LIST_DEVICES_COMMAND = "ls /dev/sd* | egrep -v '.*[0-9]$'"


def allocate_device_name(used_devices: Iterable[str]) -> str:
    """
    Return the first device name not in use.

    Args:
        used_devices: Device paths currently present on the host

    Returns:
        Device path such as /dev/sdi

    Raises:
        ResourceExhaustedError: If every candidate name is taken
    """
    used = {device.strip() for device in used_devices}
    for suffix in DEVICE_SUFFIXES:
        device = f"{DEVICE_PREFIX}{suffix}"
        if device not in used:
            return device

    raise ResourceExhaustedError("No free device to use in attachment")


def list_used_devices(executor: RemoteExecutor, host: str) -> Set[str]:
    """
    List the /dev/sd? devices present on a host.

    A failed listing means the glob matched nothing, which is what hosts
    exposing only NVMe devices report.
    """
    try:
        output = run_remote(executor, host, LIST_DEVICES_COMMAND)
    except RemoteExecutionError as e:
        logger.warning(f"No /dev/sd* devices listed on {host}: {e}")
        return set()

    return {line.strip() for line in output.splitlines() if line.strip()}


class HostLeases:
    """
    One lock per worker host, shared by all workflows in a process.

    The leases also remember which device names workflows have attached on
    each host. Hosts with NVMe-only naming never list /dev/sd? devices, so
    the reserved names are the only record of what is in use there.
    """

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: Dict[str, threading.Lock] = {}
        self._reserved: Dict[str, Set[str]] = {}

    def _lock_for(self, host_id: str) -> threading.Lock:
        with self._guard:
            return self._locks.setdefault(host_id, threading.Lock())

    @contextmanager
    def lease(self, host_id: str) -> Iterator[None]:
        lock = self._lock_for(host_id)
        logger.debug(f"Waiting for device lease on {host_id}")
        with lock:
            logger.debug(f"Acquired device lease on {host_id}")
            yield
        logger.debug(f"Released device lease on {host_id}")

    def reserved(self, host_id: str) -> Set[str]:
        with self._guard:
            return set(self._reserved.get(host_id, ()))

    def reserve(self, host_id: str, device: str) -> None:
        with self._guard:
            self._reserved.setdefault(host_id, set()).add(device)
        logger.debug(f"Reserved {device} on {host_id}")

    def release(self, host_id: str, device: str) -> None:
        with self._guard:
            self._reserved.get(host_id, set()).discard(device)
        logger.debug(f"Released {device} on {host_id}")
