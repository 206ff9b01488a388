"""
Capability interfaces over the EC2 control plane.

The workflow depends on these small interfaces rather than on one client
object, so a test double only has to implement what a test exercises.
"""

from abc import ABC, abstractmethod

from .models import ImageDetail, ResourceKind, SnapshotDetail, VolumeDetail


class ImageOps(ABC):
    """Operations on machine images."""

    @abstractmethod
    def copy_image(self, source_image_id: str, source_region: str, target_name: str) -> str:
        """
        Copy an image into the working account.

        Args:
            source_image_id: Image to copy
            source_region: Region the source image lives in
            target_name: Name of the copy

        Returns:
            ID of the new image
        """
        ...

    @abstractmethod
    def describe_image(self, image_id: str) -> ImageDetail:
        """Return exactly one image, raising NotFoundError if there is none."""
        ...

    @abstractmethod
    def deregister_image(self, image_id: str) -> None:
        """Deregister an image. Already deregistered images are not an error."""
        ...

    @abstractmethod
    def exists(self, kind: ResourceKind, resource_id: str) -> bool:
        """Lenient existence check used while waiting for deletions."""
        ...


class SnapshotOps(ABC):
    """Operations on EBS snapshots."""

    @abstractmethod
    def describe_snapshot(self, snapshot_id: str) -> SnapshotDetail:
        ...


class VolumeOps(ABC):
    """Operations on EBS volumes."""

    @abstractmethod
    def create_volume(self, snapshot_id: str, size_gb: int, availability_zone: str) -> str:
        """
        Create a volume from a snapshot.

        Args:
            snapshot_id: Snapshot backing the volume
            size_gb: Volume size in GiB
            availability_zone: Zone the volume is created in

        Returns:
            ID of the new volume
        """
        ...

    @abstractmethod
    def describe_volume(self, volume_id: str) -> VolumeDetail:
        ...

    @abstractmethod
    def delete_volume(self, volume_id: str) -> None:
        """Delete a volume. A volume that no longer exists is not an error."""
        ...

    @abstractmethod
    def exists(self, kind: ResourceKind, resource_id: str) -> bool:
        ...


class AttachmentOps(ABC):
    """Attaching volumes to the worker instance."""

    @abstractmethod
    def attach_volume(self, device: str, instance_id: str, volume_id: str) -> None:
        ...

    @abstractmethod
    def detach_volume(self, device: str, instance_id: str, volume_id: str) -> None:
        """Detach a volume. Already detached or deleted volumes are not an error."""
        ...


class ResourceClient(ImageOps, SnapshotOps, VolumeOps, AttachmentOps):
    """All control-plane capabilities needed by one image workflow."""
