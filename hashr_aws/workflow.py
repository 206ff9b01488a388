"""
Image import workflow

Turns one Amazon owned AMI into a local disk archive:

1. Copy the AMI into the HashR account and wait for it to become available
2. Create a volume from its first snapshot, attach it to the worker
   instance and run the archive tool against the device
3. Download the archive the tool uploaded to S3
4. Release everything created along the way

Every resource registers its release action as soon as it exists. The
release actions run in reverse order on every exit path, so a failure in
any step still detaches, deletes and deregisters what was created.
"""

from dataclasses import dataclass, field
from enum import Enum
import logging
import os
import shlex
from typing import Callable, List, Optional, Tuple

from .devices import HostLeases, allocate_device_name, list_used_devices
from .errors import (
    NotFoundError,
    PreconditionError,
    RemoteConnectionError,
    RemoteExecutionError,
    ResourceStateError,
    TransferError,
    TransientQueryError,
    WorkflowError,
)
from .models import (
    Archive,
    AttachmentState,
    ImageDetail,
    ImageState,
    ResourceKind,
    SourceImage,
    VolumeState,
    archive_name_for,
)
from .remote import RemoteExecutor, run_remote
from .resources import ResourceClient
from .storage import ObjectStore
from .waiter import wait_until

logger = logging.getLogger(__name__)

DEFAULT_ARCHIVE_TOOL = "/usr/local/sbin/hashr-archive"

# Errors that mean "not there yet" while polling a describe call
DESCRIBE_RETRY = (TransientQueryError, NotFoundError)

# Errors that mean "not there yet" while polling the worker instance
REMOTE_RETRY = (TransientQueryError, RemoteExecutionError, RemoteConnectionError)

FAILED_IMAGE_STATES = {ImageState.FAILED, ImageState.ERROR, ImageState.INVALID, ImageState.DEREGISTERED}


class Phase(Enum):
    IDLE = "idle"
    COPYING = "copying"
    COPY_AVAILABLE = "copy-available"
    PROVISIONING_VOLUME = "provisioning-volume"
    VOLUME_ATTACHED = "volume-attached"
    ARCHIVING = "archiving"
    ARCHIVE_READY = "archive-ready"
    DOWNLOADING = "downloading"
    DOWNLOADED = "downloaded"
    CLEANING_UP = "cleaning-up"
    DONE = "done"
    FAILED = "failed"


PHASE_ORDER = [
    Phase.IDLE,
    Phase.COPYING,
    Phase.COPY_AVAILABLE,
    Phase.PROVISIONING_VOLUME,
    Phase.VOLUME_ATTACHED,
    Phase.ARCHIVING,
    Phase.ARCHIVE_READY,
    Phase.DOWNLOADING,
    Phase.DOWNLOADED,
    Phase.CLEANING_UP,
    Phase.DONE,
]

TERMINAL_PHASES = {Phase.DONE, Phase.FAILED}


@dataclass
class WorkflowSettings:
    """
    Per-run parameters shared by every image processed on one worker.

    Args:
        instance_id: Worker EC2 instance the volumes are attached to
        host: Address used to reach the worker over SSH
        availability_zone: Zone of the worker, where volumes are created
        source_region: Region the source images are copied from
        bucket: S3 bucket the archive tool uploads to
        local_path: Local directory archives are downloaded into
        remote_path: Directory on the worker the archive tool writes to
        poll_interval: Seconds between polls
        max_attempts: Polls per wait; the archive wait gets a multiple of it
        archive_wait_multiplier: Multiplier applied to max_attempts for the archive
        archive_tool: Path of the archive tool on the worker
        delete_archive: Delete the S3 object after download
    """
    instance_id: str
    host: str
    availability_zone: str
    source_region: str
    bucket: str
    local_path: str
    remote_path: str
    poll_interval: float = 1
    max_attempts: int = 600
    archive_wait_multiplier: int = 2
    archive_tool: str = DEFAULT_ARCHIVE_TOOL
    delete_archive: bool = False


@dataclass
class WorkflowState:
    """Mutable state of one workflow run. Never shared between images."""
    source_image_id: str
    phase: Phase = Phase.IDLE
    history: List[Phase] = field(default_factory=list)
    image_id: Optional[str] = None
    image: Optional[ImageDetail] = None
    volume_id: Optional[str] = None
    volume_created: bool = False
    device_name: Optional[str] = None
    archive: Optional[Archive] = None
    error: Optional[WorkflowError] = None
    release_actions: List[Tuple[str, Callable[[], None]]] = field(default_factory=list)

    def advance(self, phase: Phase) -> None:
        """
        Move to the next phase.

        Phases only move forward one step at a time, except that cleanup
        and FAILED are reachable from any non-terminal phase.
        """
        if self.phase in TERMINAL_PHASES:
            raise PreconditionError(f"Workflow for {self.source_image_id} already ended in {self.phase.value}")

        if phase is Phase.CLEANING_UP:
            legal = self.phase is not Phase.CLEANING_UP
        elif phase is Phase.FAILED:
            legal = True
        else:
            legal = PHASE_ORDER.index(phase) == PHASE_ORDER.index(self.phase) + 1
        if not legal:
            raise PreconditionError(f"Illegal transition from {self.phase.value} to {phase.value}")

        logger.debug(f"[{self.source_image_id}] {self.phase.value} -> {phase.value}")
        self.phase = phase
        self.history.append(phase)

    def set_image(self, image_id: str) -> None:
        if self.image_id is not None and self.image_id != image_id:
            raise PreconditionError(f"Copied image already recorded as {self.image_id}")
        self.image_id = image_id

    def register_release(self, description: str, action: Callable[[], None]) -> None:
        self.release_actions.append((description, action))


class ImageWorkflow:
    """
    Drives one source image through copy, generate, download and cleanup.

    Args:
        source: Image to import
        resources: EC2 capabilities
        executor: Command execution on the worker instance
        store: Object storage holding the produced archive
        settings: Worker and polling parameters
        leases: Per-host device leases shared with concurrent workflows
        archive_name: Override of the archive object name
        sleep: Sleep function used by every wait
    """

    def __init__(
        self,
        source: Optional[SourceImage],
        resources: ResourceClient,
        executor: RemoteExecutor,
        store: ObjectStore,
        settings: WorkflowSettings,
        leases: Optional[HostLeases] = None,
        archive_name: Optional[str] = None,
        sleep: Optional[Callable[[float], None]] = None,
    ):
        self.source = source
        self.source_image_id = source.image_id if source else ""
        self.resources = resources
        self.executor = executor
        self.store = store
        self.settings = settings
        self.leases = leases or HostLeases()
        self.archive_name = archive_name or archive_name_for(self.source_image_id)
        self._sleep = sleep
        self.state: Optional[WorkflowState] = None

    def run(self) -> WorkflowState:
        """
        Run every phase, then release created resources.

        Returns:
            Final state of the run, in phase DONE

        Raises:
            WorkflowError: Naming the failed phase and the source image
        """
        state = WorkflowState(source_image_id=self.source_image_id)
        self.state = state

        phases = (
            ("copy", self._copy),
            ("generate", self._generate),
            ("download", self._download),
        )

        logger.info(f"Processing image {self.source_image_id}")

        completed = False
        cleanup_error: Optional[Exception] = None
        try:
            for name, step in phases:
                try:
                    step(state)
                except Exception as e:
                    logger.error(f"{name} failed for image {self.source_image_id}: {e}")
                    state.error = WorkflowError(name, self.source_image_id, e)
                    raise state.error from e
            completed = True
        finally:
            cleanup_error = self._cleanup(state)
            if not completed:
                if cleanup_error is not None:
                    logger.error(f"Cleanup after failure of {self.source_image_id} also failed: {cleanup_error}")
                state.advance(Phase.FAILED)

        if cleanup_error is not None:
            state.error = WorkflowError("cleanup", self.source_image_id, cleanup_error)
            state.advance(Phase.FAILED)
            raise state.error from cleanup_error

        state.advance(Phase.DONE)
        logger.info(f"✓ Image {self.source_image_id} processed: {state.archive.local_path}")
        return state

    # Waiting

    def _wait(self, check: Callable[[], bool], description: str, retry_on: tuple, multiplier: int = 1) -> int:
        kwargs = {'sleep': self._sleep} if self._sleep else {}
        return wait_until(
            check,
            interval=self.settings.poll_interval,
            max_attempts=self.settings.max_attempts * multiplier,
            description=description,
            retry_on=retry_on,
            **kwargs,
        )

    def _wait_for_image(self, image_id: str) -> ImageDetail:
        latest: List[ImageDetail] = []

        def available() -> bool:
            detail = self.resources.describe_image(image_id)
            if detail.state in FAILED_IMAGE_STATES:
                raise ResourceStateError(image_id, detail.state.value, ImageState.AVAILABLE.value)
            latest[:] = [detail]
            return detail.state is ImageState.AVAILABLE

        self._wait(available, f"image {image_id} to be available", DESCRIBE_RETRY)
        logger.info(f"Image {image_id} is in the state {latest[0].state.value}")
        return latest[0]

    def _wait_for_volume_available(self, volume_id: str, gone_is_ok: bool = False) -> None:
        def available() -> bool:
            try:
                detail = self.resources.describe_volume(volume_id)
            except NotFoundError:
                if gone_is_ok:
                    return True
                raise
            if detail.state is VolumeState.ERROR:
                raise ResourceStateError(volume_id, detail.state.value, VolumeState.AVAILABLE.value)
            return detail.state is VolumeState.AVAILABLE

        self._wait(available, f"volume {volume_id} to be available", DESCRIBE_RETRY)
        logger.info(f"Volume {volume_id} is in the target state {VolumeState.AVAILABLE.value}")

    def _wait_for_attachment(self, volume_id: str) -> None:
        instance_id = self.settings.instance_id

        def attached() -> bool:
            detail = self.resources.describe_volume(volume_id)
            return detail.attachment_state(instance_id) is AttachmentState.ATTACHED

        self._wait(attached, f"volume {volume_id} to attach to {instance_id}", DESCRIBE_RETRY)
        logger.info(f"Volume {volume_id} is attached to the instance {instance_id}")

    def _wait_until_gone(self, kind: ResourceKind, resource_id: str) -> None:
        def gone() -> bool:
            return not self.resources.exists(kind, resource_id)

        self._wait(gone, f"{kind.value} {resource_id} to be removed", (TransientQueryError,))

    # Phases

    def _copy(self, state: WorkflowState) -> None:
        state.advance(Phase.COPYING)

        if not self.source_image_id:
            raise PreconditionError("Source image ID is required")
        if self.source is None:
            raise PreconditionError(f"Source image {self.source_image_id} is not resolved")

        target_name = f"copy-{self.source_image_id}"
        image_id = self.resources.copy_image(self.source_image_id, self.settings.source_region, target_name)
        state.set_image(image_id)
        state.register_release(f"deregister image {image_id}", lambda: self._release_image(image_id))

        state.image = self._wait_for_image(image_id)
        state.advance(Phase.COPY_AVAILABLE)

    def _generate(self, state: WorkflowState) -> None:
        state.advance(Phase.PROVISIONING_VOLUME)

        mappings = state.image.block_device_mappings if state.image else ()
        if not mappings:
            raise PreconditionError(f"No snapshots in the image {state.image_id}")

        mapping = mappings[0]
        if len(mappings) > 1:
            logger.warning(
                f"Expecting 1 snapshot, received {len(mappings)} snapshots. "
                f"Only using snapshot {mapping.snapshot_id}"
            )

        snapshot = self.resources.describe_snapshot(mapping.snapshot_id)
        if snapshot.is_bound:
            volume_id = snapshot.volume_id
            logger.info(f"Snapshot {snapshot.snapshot_id} is bound to volume {volume_id}, reusing it")
        else:
            if mapping.volume_size is None:
                raise PreconditionError(f"No volume size declared for the snapshot {mapping.snapshot_id}")
            volume_id = self.resources.create_volume(
                mapping.snapshot_id,
                mapping.volume_size,
                self.settings.availability_zone,
            )
            state.volume_created = True
            state.register_release(f"delete volume {volume_id}", lambda: self._release_volume(volume_id))
        state.volume_id = volume_id

        self._wait_for_volume_available(volume_id)

        instance_id = self.settings.instance_id
        with self.leases.lease(instance_id):
            used = list_used_devices(self.executor, self.settings.host) | self.leases.reserved(instance_id)
            device = allocate_device_name(used)
            state.device_name = device

            self.leases.reserve(instance_id, device)
            try:
                self.resources.attach_volume(device, instance_id, volume_id)
            except Exception:
                self.leases.release(instance_id, device)
                raise
            state.register_release(
                f"detach volume {volume_id} from {device}",
                lambda: self._release_attachment(device, volume_id),
            )
            self._wait_for_attachment(volume_id)

        state.advance(Phase.VOLUME_ATTACHED)
        self._archive(state, device)

    def _archive(self, state: WorkflowState, device: str) -> None:
        state.advance(Phase.ARCHIVING)

        archive = Archive(
            name=self.archive_name,
            remote_dir=self.settings.remote_path,
            bucket=self.settings.bucket,
        )
        command = " ".join(
            shlex.quote(arg)
            for arg in (self.settings.archive_tool, device, archive.output_path, archive.bucket)
        )
        with self.executor.open(self.settings.host) as session:
            # Connected, so the command is issued and may leave an object behind
            state.archive = archive
            state.register_release(f"remove marker {archive.marker_path}", lambda: self._release_marker(archive))
            session.run(command)

        logger.info(f"Waiting for the generation of archive {archive.name} in {archive.marker_path}")

        def marker_exists() -> bool:
            output = run_remote(self.executor, self.settings.host, f"ls {shlex.quote(archive.marker_path)}")
            return archive.marker_path in output

        self._wait(
            marker_exists,
            f"archive marker {archive.marker_path}",
            REMOTE_RETRY,
            multiplier=self.settings.archive_wait_multiplier,
        )

        logger.info(f"✓ Generated archive {archive.name} from device {device}")
        state.advance(Phase.ARCHIVE_READY)

    def _download(self, state: WorkflowState) -> None:
        state.advance(Phase.DOWNLOADING)

        archive = state.archive
        local_path = os.path.join(self.settings.local_path, archive.name)
        self.store.download(archive.bucket, archive.key, local_path)
        archive.local_path = local_path

        state.advance(Phase.DOWNLOADED)

    def _cleanup(self, state: WorkflowState) -> Optional[Exception]:
        """
        Run release actions newest first, then the archive retention policy.

        Every action is attempted even if an earlier one fails.

        Returns:
            The first error raised by a release action, or None
        """
        state.advance(Phase.CLEANING_UP)
        logger.info(f"Cleaning up resources of image {self.source_image_id}")

        first_error: Optional[Exception] = None
        while state.release_actions:
            description, action = state.release_actions.pop()
            try:
                action()
                logger.info(f"  ✓ {description}")
            except Exception as e:
                logger.error(f"  ✗ Failed to {description}: {e}")
                if first_error is None:
                    first_error = e

        archive = state.archive
        if archive is not None:
            if self.settings.delete_archive:
                try:
                    self.store.delete(archive.bucket, archive.key)
                except TransferError as e:
                    logger.error(f"  ✗ Failed to delete s3://{archive.bucket}/{archive.key}: {e}")
                    if first_error is None:
                        first_error = e
            else:
                logger.info(f"  Retaining s3://{archive.bucket}/{archive.key}")

        return first_error

    # Release actions

    def _release_marker(self, archive: Archive) -> None:
        run_remote(self.executor, self.settings.host, f"rm -f {shlex.quote(archive.marker_path)}")

    def _release_attachment(self, device: str, volume_id: str) -> None:
        self.resources.detach_volume(device, self.settings.instance_id, volume_id)
        self._wait_for_volume_available(volume_id, gone_is_ok=True)
        self.leases.release(self.settings.instance_id, device)

    def _release_volume(self, volume_id: str) -> None:
        self.resources.delete_volume(volume_id)
        self._wait_until_gone(ResourceKind.VOLUME, volume_id)

    def _release_image(self, image_id: str) -> None:
        self.resources.deregister_image(image_id)
        self._wait_until_gone(ResourceKind.IMAGE, image_id)
