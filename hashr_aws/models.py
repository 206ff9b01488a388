"""
Descriptors of the EC2 resources handled by the importer.

These are plain dataclasses built by the EC2 adapter from API responses, so
the workflow never touches raw boto3 dictionaries.
"""

from dataclasses import dataclass
from enum import Enum
import hashlib
import posixpath
from typing import Any, Dict, Optional, Tuple

# Snapshots that are not backed by a live volume report this volume ID.
UNBOUND_VOLUME_ID = "vol-ffffffff"


class ImageState(Enum):
    PENDING = "pending"
    AVAILABLE = "available"
    INVALID = "invalid"
    DEREGISTERED = "deregistered"
    TRANSIENT = "transient"
    FAILED = "failed"
    ERROR = "error"
    DISABLED = "disabled"


class SnapshotState(Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    ERROR = "error"
    RECOVERABLE = "recoverable"
    RECOVERING = "recovering"


class VolumeState(Enum):
    CREATING = "creating"
    AVAILABLE = "available"
    IN_USE = "in-use"
    DELETING = "deleting"
    DELETED = "deleted"
    ERROR = "error"


class AttachmentState(Enum):
    ATTACHING = "attaching"
    ATTACHED = "attached"
    DETACHING = "detaching"
    DETACHED = "detached"
    BUSY = "busy"


class ResourceKind(Enum):
    IMAGE = "image"
    VOLUME = "volume"
    SNAPSHOT = "snapshot"


@dataclass(frozen=True)
class BlockDeviceMapping:
    device_name: str
    snapshot_id: str
    volume_size: Optional[int]

    @classmethod
    def from_api(cls, mapping: Dict[str, Any]) -> Optional["BlockDeviceMapping"]:
        """Build a mapping from a DescribeImages entry, None for non-EBS devices."""
        ebs = mapping.get('Ebs')
        if not ebs or not ebs.get('SnapshotId'):
            return None
        return cls(
            device_name=mapping.get('DeviceName', ''),
            snapshot_id=ebs['SnapshotId'],
            volume_size=int(ebs['VolumeSize']) if ebs.get('VolumeSize') else None,
        )


def _mappings_from_api(image: Dict[str, Any]) -> Tuple[BlockDeviceMapping, ...]:
    mappings = []
    for raw in image.get('BlockDeviceMappings', []):
        mapping = BlockDeviceMapping.from_api(raw)
        if mapping is not None:
            mappings.append(mapping)
    return tuple(mappings)


@dataclass(frozen=True)
class SourceImage:
    """
    Vendor-owned image selected for import.

    Immutable; produced by discovery and only read by the workflow.
    """
    image_id: str
    name: str = ""
    description: str = ""
    location: str = ""
    architecture: str = ""
    creation_date: str = ""
    deprecation_time: str = ""
    block_device_mappings: Tuple[BlockDeviceMapping, ...] = ()

    @classmethod
    def from_api(cls, image: Dict[str, Any]) -> "SourceImage":
        return cls(
            image_id=image['ImageId'],
            name=image.get('Name', ''),
            description=image.get('Description', ''),
            location=image.get('ImageLocation', ''),
            architecture=image.get('Architecture', ''),
            creation_date=image.get('CreationDate', ''),
            deprecation_time=image.get('DeprecationTime', ''),
            block_device_mappings=_mappings_from_api(image),
        )

    def quick_sha256_hash(self) -> str:
        """
        Fingerprint of the image identity.

        Hashes the image ID, creation date and deprecation time, which is
        enough to tell whether a vendor image has already been processed
        without downloading it.

        Returns:
            Hex encoded SHA-256 digest
        """
        data = f"{self.image_id}{self.creation_date}{self.deprecation_time or ''}"
        return hashlib.sha256(data.encode('utf-8')).hexdigest()


@dataclass(frozen=True)
class ImageDetail:
    image_id: str
    state: ImageState
    name: str = ""
    block_device_mappings: Tuple[BlockDeviceMapping, ...] = ()

    @classmethod
    def from_api(cls, image: Dict[str, Any]) -> "ImageDetail":
        return cls(
            image_id=image['ImageId'],
            state=ImageState(image['State']),
            name=image.get('Name', ''),
            block_device_mappings=_mappings_from_api(image),
        )


@dataclass(frozen=True)
class SnapshotDetail:
    snapshot_id: str
    state: SnapshotState
    volume_id: str = UNBOUND_VOLUME_ID

    @property
    def is_bound(self) -> bool:
        return bool(self.volume_id) and self.volume_id != UNBOUND_VOLUME_ID

    @classmethod
    def from_api(cls, snapshot: Dict[str, Any]) -> "SnapshotDetail":
        return cls(
            snapshot_id=snapshot['SnapshotId'],
            state=SnapshotState(snapshot['State']),
            volume_id=snapshot.get('VolumeId') or UNBOUND_VOLUME_ID,
        )


@dataclass(frozen=True)
class VolumeAttachment:
    volume_id: str
    instance_id: str
    device: str
    state: AttachmentState

    @classmethod
    def from_api(cls, attachment: Dict[str, Any]) -> "VolumeAttachment":
        return cls(
            volume_id=attachment['VolumeId'],
            instance_id=attachment['InstanceId'],
            device=attachment.get('Device', ''),
            state=AttachmentState(attachment['State']),
        )


@dataclass(frozen=True)
class VolumeDetail:
    volume_id: str
    state: VolumeState
    size: int = 0
    availability_zone: str = ""
    attachments: Tuple[VolumeAttachment, ...] = ()

    @classmethod
    def from_api(cls, volume: Dict[str, Any]) -> "VolumeDetail":
        return cls(
            volume_id=volume['VolumeId'],
            state=VolumeState(volume['State']),
            size=int(volume.get('Size') or 0),
            availability_zone=volume.get('AvailabilityZone', ''),
            attachments=tuple(
                VolumeAttachment.from_api(a) for a in volume.get('Attachments', [])
            ),
        )

    def attachment_state(self, instance_id: str) -> Optional[AttachmentState]:
        """State of the attachment to one specific instance, if any."""
        for attachment in self.attachments:
            if attachment.instance_id == instance_id:
                return attachment.state
        return None


@dataclass(frozen=True)
class InstanceDetail:
    instance_id: str
    public_dns_name: str
    key_name: str
    availability_zone: str

    @classmethod
    def from_api(cls, instance: Dict[str, Any]) -> "InstanceDetail":
        return cls(
            instance_id=instance['InstanceId'],
            public_dns_name=instance.get('PublicDnsName') or instance.get('PublicIpAddress', ''),
            key_name=instance.get('KeyName', ''),
            availability_zone=instance.get('Placement', {}).get('AvailabilityZone', ''),
        )


@dataclass
class Archive:
    """Disk archive produced on the worker host and uploaded to S3."""
    name: str
    remote_dir: str
    bucket: str
    local_path: Optional[str] = None

    @property
    def key(self) -> str:
        return self.name

    @property
    def output_path(self) -> str:
        return posixpath.join(self.remote_dir, self.name)

    @property
    def marker_path(self) -> str:
        return f"{self.output_path}.done"


def archive_name_for(source_image_id: str) -> str:
    return f"{source_image_id}-raw.dd.gz"
