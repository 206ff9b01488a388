"""
EC2 implementation of the resource capabilities.

Wraps a boto3 EC2 client passed in by the caller and converts botocore
errors into the importer's error types.
"""

import logging
from typing import Any, Dict, List, Optional, Sequence

from botocore.exceptions import BotoCoreError, ClientError

from .errors import (
    NotFoundError,
    PreconditionError,
    RemoteAPIError,
    TransientQueryError,
)
from .models import (
    ImageDetail,
    ImageState,
    InstanceDetail,
    ResourceKind,
    SnapshotDetail,
    SourceImage,
    VolumeDetail,
    VolumeState,
)
from .resources import ResourceClient

logger = logging.getLogger(__name__)

TRANSIENT_ERROR_CODES = {
    'RequestLimitExceeded',
    'Throttling',
    'ThrottlingException',
    'InternalError',
    'InternalFailure',
    'ServiceUnavailable',
    'Unavailable',
}

# Errors meaning the volume is already detached (or gone)
DETACHED_ERROR_CODES = {
    'IncorrectState',
    'InvalidAttachment.NotFound',
    'InvalidVolume.NotFound',
}

# Errors meaning the image is already deregistered
DEREGISTERED_ERROR_CODES = {
    'InvalidAMIID.NotFound',
    'InvalidAMIID.Unavailable',
}


def _single(items: List[Dict[str, Any]], kind: str, resource_id: str) -> Dict[str, Any]:
    if not items:
        raise NotFoundError(f"No {kind} found with ID {resource_id}")
    if len(items) != 1:
        raise PreconditionError(f"Expecting 1 {kind}, received {len(items)} {kind}s for {resource_id}")
    return items[0]


class Ec2ResourceClient(ResourceClient):
    """
    Resource capabilities backed by the EC2 API.

    Args:
        client: Boto3 EC2 client
    """

    def __init__(self, client: Any):
        self.client = client

    def _call(self, action: str, description: str, **kwargs: Any) -> Dict[str, Any]:
        try:
            return getattr(self.client, action)(**kwargs)
        except ClientError as e:
            error = e.response.get('Error', {})
            code = error.get('Code', '')
            message = error.get('Message', str(e))
            if code.endswith('.NotFound'):
                raise NotFoundError(f"Error {description}: {message}") from e
            if code in TRANSIENT_ERROR_CODES:
                raise TransientQueryError(f"Error {description}: {message}") from e
            raise RemoteAPIError(f"Error {description}: {message}", code) from e
        except BotoCoreError as e:
            raise TransientQueryError(f"Error {description}: {e}") from e

    # Images

    def copy_image(self, source_image_id: str, source_region: str, target_name: str) -> str:
        logger.info(f"Copying image {source_image_id} from region {source_region} as {target_name}")

        response = self._call(
            'copy_image',
            f"copying image {source_image_id}",
            Name=target_name,
            SourceImageId=source_image_id,
            SourceRegion=source_region,
        )

        image_id = response['ImageId']
        logger.info(f"Copied image {source_image_id} as image ID {image_id}")
        return image_id

    def describe_image(self, image_id: str) -> ImageDetail:
        response = self._call(
            'describe_images',
            f"getting details of the image {image_id}",
            ImageIds=[image_id],
        )
        return ImageDetail.from_api(_single(response.get('Images', []), 'image', image_id))

    def deregister_image(self, image_id: str) -> None:
        logger.info(f"Deregistering image {image_id}")

        try:
            self._call('deregister_image', f"deregistering image {image_id}", ImageId=image_id)
        except NotFoundError:
            logger.warning(f"Image {image_id} not found - may already be deregistered")
            return
        except RemoteAPIError as e:
            if e.code in DEREGISTERED_ERROR_CODES:
                logger.warning(f"Image {image_id} not found - may already be deregistered")
                return
            raise

        logger.info(f"✓ Image {image_id} deregistered")

    # Snapshots

    def describe_snapshot(self, snapshot_id: str) -> SnapshotDetail:
        logger.info(f"Getting details of the snapshot {snapshot_id}")

        response = self._call(
            'describe_snapshots',
            f"getting details of the snapshot {snapshot_id}",
            Filters=[{'Name': 'snapshot-id', 'Values': [snapshot_id]}],
        )
        return SnapshotDetail.from_api(_single(response.get('Snapshots', []), 'snapshot', snapshot_id))

    # Volumes

    def create_volume(self, snapshot_id: str, size_gb: int, availability_zone: str) -> str:
        logger.info(f"Creating volume from snapshot {snapshot_id} in {availability_zone}")

        response = self._call(
            'create_volume',
            f"creating a volume from the snapshot {snapshot_id}",
            SnapshotId=snapshot_id,
            VolumeType='gp2',
            Size=size_gb,
            AvailabilityZone=availability_zone,
        )

        volume_id = response['VolumeId']
        logger.info(f"Created the volume {volume_id} from the snapshot {snapshot_id}")
        return volume_id

    def describe_volume(self, volume_id: str) -> VolumeDetail:
        response = self._call(
            'describe_volumes',
            f"getting details of the volume {volume_id}",
            Filters=[{'Name': 'volume-id', 'Values': [volume_id]}],
        )
        return VolumeDetail.from_api(_single(response.get('Volumes', []), 'volume', volume_id))

    def delete_volume(self, volume_id: str) -> None:
        logger.info(f"Deleting the volume {volume_id}")

        try:
            self._call('delete_volume', f"deleting the volume {volume_id}", VolumeId=volume_id)
        except NotFoundError:
            logger.warning(f"Volume {volume_id} not found - may already be deleted")
            return

        logger.info(f"✓ Volume {volume_id} deleted")

    # Attachments

    def attach_volume(self, device: str, instance_id: str, volume_id: str) -> None:
        logger.info(f"Attaching the volume {volume_id} (device {device}) to the instance {instance_id}")

        response = self._call(
            'attach_volume',
            f"attaching the volume {volume_id} to the instance {instance_id}",
            Device=device,
            InstanceId=instance_id,
            VolumeId=volume_id,
        )

        logger.info(f"Attached the volume {volume_id} to the instance {instance_id} as {response.get('Device', device)}")

    def detach_volume(self, device: str, instance_id: str, volume_id: str) -> None:
        logger.info(f"Detaching the volume {volume_id} (device {device}) from the instance {instance_id}")

        try:
            self._call(
                'detach_volume',
                f"detaching the volume {volume_id}",
                Device=device,
                InstanceId=instance_id,
                VolumeId=volume_id,
            )
        except NotFoundError:
            logger.warning(f"Volume {volume_id} not found - may already be deleted")
            return
        except RemoteAPIError as e:
            if e.code in DETACHED_ERROR_CODES:
                logger.warning(f"Volume {volume_id} is not attached - may already be detached")
                return
            raise

        logger.info(f"✓ Detach of volume {volume_id} requested")

    # Existence checks

    def exists(self, kind: ResourceKind, resource_id: str) -> bool:
        """
        Check whether a resource still exists.

        Unlike the describe methods, zero matches is an answer here, not an
        error. Images in the deregistered state and volumes in the deleted
        state count as gone.
        """
        try:
            if kind is ResourceKind.IMAGE:
                return self.describe_image(resource_id).state is not ImageState.DEREGISTERED
            if kind is ResourceKind.VOLUME:
                return self.describe_volume(resource_id).state is not VolumeState.DELETED
            if kind is ResourceKind.SNAPSHOT:
                self.describe_snapshot(resource_id)
                return True
        except NotFoundError:
            return False
        except RemoteAPIError as e:
            if e.code in DEREGISTERED_ERROR_CODES:
                return False
            raise

        raise ValueError(f"Unsupported resource kind: {kind}")

    # Discovery and worker instance helpers

    def get_availability_zone_region(self) -> str:
        """Return the region name of the client's availability zones."""
        response = self._call('describe_availability_zones', "describing availability zones")

        for zone in response.get('AvailabilityZones', []):
            if zone.get('RegionName'):
                return zone['RegionName']

        raise PreconditionError("No region name in the availability zones")

    def get_instance_detail(self, instance_id: str) -> InstanceDetail:
        logger.info(f"Getting details of the instance {instance_id}")

        response = self._call(
            'describe_instances',
            f"getting details of the instance {instance_id}",
            Filters=[{'Name': 'instance-id', 'Values': [instance_id]}],
        )

        for reservation in response.get('Reservations', []):
            for instance in reservation.get('Instances', []):
                if instance.get('InstanceId') == instance_id:
                    return InstanceDetail.from_api(instance)

        raise NotFoundError(f"Unable to find the instance {instance_id}")

    def get_amazon_images(
        self,
        os_name: str,
        architectures: Optional[Sequence[str]] = None,
    ) -> List[SourceImage]:
        """
        List active Amazon owned images for an operating system.

        Args:
            os_name: Case-insensitive substring of the image name or description
            architectures: Optional list of architectures to keep

        Returns:
            Matching images as SourceImage descriptors
        """
        filters = [{'Name': 'owner-alias', 'Values': ['amazon']}]
        if architectures:
            filters.append({'Name': 'architecture', 'Values': list(architectures)})

        response = self._call(
            'describe_images',
            "getting image list",
            Filters=filters,
            IncludeDeprecated=False,
            IncludeDisabled=False,
        )

        os_name = os_name.lower()
        images = []
        for image in response.get('Images', []):
            name = (image.get('Name') or '').lower()
            description = (image.get('Description') or '').lower()
            if os_name in name or os_name in description:
                images.append(SourceImage.from_api(image))

        logger.info(f"Found {len(images)} Amazon image(s) matching '{os_name}'")
        return images
