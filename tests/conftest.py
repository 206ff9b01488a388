"""
Pytest configuration and shared fixtures for hashr-aws tests.

Provides in-memory fakes of the EC2, SSH and S3 collaborators. All fakes
append to one shared event list so tests can assert the order of calls
across collaborators.
"""

import threading
from typing import Callable, Dict, List, Optional, Set, Tuple

import pytest

from hashr_aws.errors import NotFoundError, RemoteExecutionError
from hashr_aws.models import (
    AttachmentState,
    BlockDeviceMapping,
    ImageDetail,
    ImageState,
    ResourceKind,
    SnapshotDetail,
    SnapshotState,
    SourceImage,
    UNBOUND_VOLUME_ID,
    VolumeAttachment,
    VolumeDetail,
    VolumeState,
)
from hashr_aws.remote import RemoteExecutor, RemoteSession
from hashr_aws.resources import ResourceClient
from hashr_aws.storage import ObjectStore
from hashr_aws.workflow import WorkflowSettings


# ==============================================================================
# Fakes
# ==============================================================================


class FakeResources(ResourceClient):
    """In-memory EC2 control plane."""

    def __init__(self, events: List[Tuple], snapshots: Dict[str, SnapshotDetail], mappings: Tuple[BlockDeviceMapping, ...]):
        self.events = events
        self.snapshots = snapshots
        self.mappings = mappings
        self.images: Dict[str, ImageState] = {}
        self.volumes: Dict[str, VolumeDetail] = {}
        self.image_polls_until_available = 2
        self.copy_error: Optional[Exception] = None
        self.attach_error: Optional[Exception] = None
        self._image_polls = 0
        self._image_count = 0
        self._volume_count = 0
        self._lock = threading.Lock()

    def copy_image(self, source_image_id, source_region, target_name):
        self.events.append(('copy_image', source_image_id, source_region, target_name))
        if self.copy_error:
            raise self.copy_error
        with self._lock:
            self._image_count += 1
            image_id = 'ami-copy' if self._image_count == 1 else f"ami-copy-{self._image_count}"
            self.images[image_id] = ImageState.PENDING
        return image_id

    def describe_image(self, image_id):
        if image_id not in self.images:
            raise NotFoundError(image_id)
        self._image_polls += 1
        if self._image_polls >= self.image_polls_until_available:
            self.images[image_id] = ImageState.AVAILABLE
        return ImageDetail(image_id, self.images[image_id], block_device_mappings=self.mappings)

    def deregister_image(self, image_id):
        self.events.append(('deregister_image', image_id))
        self.images.pop(image_id, None)

    def describe_snapshot(self, snapshot_id):
        if snapshot_id not in self.snapshots:
            raise NotFoundError(snapshot_id)
        return self.snapshots[snapshot_id]

    def create_volume(self, snapshot_id, size_gb, availability_zone):
        self.events.append(('create_volume', snapshot_id, size_gb, availability_zone))
        with self._lock:
            self._volume_count += 1
            volume_id = f"vol-{self._volume_count}"
        self.volumes[volume_id] = VolumeDetail(volume_id, VolumeState.AVAILABLE, size_gb, availability_zone)
        return volume_id

    def describe_volume(self, volume_id):
        if volume_id not in self.volumes:
            raise NotFoundError(volume_id)
        return self.volumes[volume_id]

    def delete_volume(self, volume_id):
        self.events.append(('delete_volume', volume_id))
        self.volumes.pop(volume_id, None)

    def attach_volume(self, device, instance_id, volume_id):
        self.events.append(('attach_volume', device, instance_id, volume_id))
        if self.attach_error:
            raise self.attach_error
        volume = self.volumes[volume_id]
        attachment = VolumeAttachment(volume_id, instance_id, device, AttachmentState.ATTACHED)
        self.volumes[volume_id] = VolumeDetail(
            volume_id, VolumeState.IN_USE, volume.size, volume.availability_zone, (attachment,)
        )

    def detach_volume(self, device, instance_id, volume_id):
        self.events.append(('detach_volume', device, instance_id, volume_id))
        volume = self.volumes.get(volume_id)
        if volume is not None:
            self.volumes[volume_id] = VolumeDetail(
                volume_id, VolumeState.AVAILABLE, volume.size, volume.availability_zone
            )

    def exists(self, kind, resource_id):
        if kind is ResourceKind.IMAGE:
            return resource_id in self.images
        if kind is ResourceKind.VOLUME:
            return resource_id in self.volumes
        return resource_id in self.snapshots


class FakeSession(RemoteSession):
    def __init__(self, executor: "FakeExecutor"):
        self.executor = executor
        self.closed = False

    def run(self, command):
        return self.executor.handle(command)

    def close(self):
        self.closed = True
        self.executor.closed += 1


class FakeExecutor(RemoteExecutor):
    """
    Worker instance answering the commands issued by the workflow.

    The completion marker shows up on the marker_after-th listing.
    """

    def __init__(self, events: List[Tuple], used_devices: Set[str], marker_after: int = 3):
        self.events = events
        self.used_devices = set(used_devices)
        self.marker_after = marker_after
        self.commands: List[str] = []
        self.marker_polls = 0
        self.opened = 0
        self.closed = 0
        self.archive_handler: Optional[Callable[[str], str]] = None

    def open(self, host):
        self.opened += 1
        return FakeSession(self)

    def handle(self, command: str) -> str:
        self.commands.append(command)

        if command.startswith('ls /dev/sd'):
            if not self.used_devices:
                raise RemoteExecutionError(command, 2, "ls: cannot access '/dev/sd*'")
            return '\n'.join(sorted(self.used_devices))

        if command.startswith('ls '):
            self.marker_polls += 1
            marker = command[3:]
            if self.marker_polls < self.marker_after:
                raise RemoteExecutionError(command, 2, f"ls: cannot access '{marker}'")
            return marker

        if command.startswith('rm -f '):
            self.events.append(('remove_marker', command[6:]))
            return ''

        self.events.append(('archive', *command.split()))
        if self.archive_handler:
            return self.archive_handler(command)
        return ''


class FakeStore(ObjectStore):
    def __init__(self, events: List[Tuple]):
        self.events = events
        self.download_error: Optional[Exception] = None

    def download(self, bucket, key, local_path):
        self.events.append(('download', bucket, key, local_path))
        if self.download_error:
            raise self.download_error

    def delete(self, bucket, key):
        self.events.append(('delete_object', bucket, key))


# ==============================================================================
# Fixtures
# ==============================================================================


@pytest.fixture
def events() -> List[Tuple]:
    return []


@pytest.fixture
def mapping() -> BlockDeviceMapping:
    return BlockDeviceMapping(device_name='/dev/xvda', snapshot_id='snap-1', volume_size=8)


@pytest.fixture
def source_image(mapping) -> SourceImage:
    return SourceImage(
        image_id='ami-source',
        name='ubuntu-jammy-22.04',
        description='Canonical, Ubuntu, 22.04 LTS',
        architecture='x86_64',
        creation_date='2024-01-01T00:00:00.000Z',
        deprecation_time='2026-01-01T00:00:00.000Z',
        block_device_mappings=(mapping,),
    )


@pytest.fixture
def fake_resources(events, mapping) -> FakeResources:
    snapshots = {
        'snap-1': SnapshotDetail('snap-1', SnapshotState.COMPLETED, UNBOUND_VOLUME_ID),
    }
    return FakeResources(events, snapshots, (mapping,))


@pytest.fixture
def fake_executor(events) -> FakeExecutor:
    return FakeExecutor(events, used_devices=set())


@pytest.fixture
def fake_store(events) -> FakeStore:
    return FakeStore(events)


@pytest.fixture
def settings() -> WorkflowSettings:
    return WorkflowSettings(
        instance_id='i-worker',
        host='worker.example.com',
        availability_zone='us-east-1a',
        source_region='us-east-1',
        bucket='bucket-x',
        local_path='/local',
        remote_path='/data',
        poll_interval=0,
        max_attempts=5,
    )


@pytest.fixture
def no_sleep() -> Callable[[float], None]:
    return lambda seconds: None
