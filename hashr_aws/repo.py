"""
Discovery of Amazon owned images and batch import.
"""

from concurrent.futures import ThreadPoolExecutor
import logging
from typing import Any, Dict, List, Optional, Sequence

from .devices import HostLeases
from .ec2 import Ec2ResourceClient
from .errors import NotFoundError, WorkflowError
from .models import SourceImage
from .remote import RemoteExecutor
from .storage import ObjectStore
from .workflow import ImageWorkflow, WorkflowSettings

logger = logging.getLogger(__name__)

REPO_NAME = "AWS"


class AwsRepo:
    """
    Amazon owned images for one operating system.

    Args:
        ec2: EC2 resource client
        os_name: Substring matched against image names and descriptions
        os_archs: Architectures to keep, all if empty
        image_ids: Only import these source images, all if empty
    """

    def __init__(
        self,
        ec2: Ec2ResourceClient,
        os_name: str,
        os_archs: Optional[Sequence[str]] = None,
        image_ids: Optional[Sequence[str]] = None,
    ):
        self.ec2 = ec2
        self.os_name = os_name
        self.os_archs = list(os_archs or [])
        self.image_ids = set(image_ids or [])

    @property
    def name(self) -> str:
        return REPO_NAME

    def discover(self) -> List[SourceImage]:
        """
        List the source images to import.

        Raises:
            NotFoundError: If no image matches the OS name
        """
        logger.info(f"Discovering Amazon images for '{self.os_name}'")

        images = self.ec2.get_amazon_images(self.os_name, self.os_archs)
        if self.image_ids:
            images = [image for image in images if image.image_id in self.image_ids]

        if not images:
            raise NotFoundError(f"No Amazon images found for OS {self.os_name}")

        for image in images:
            logger.info(f"  {image.image_id}: {image.name} ({image.architecture})")

        return images


def import_image(workflow: ImageWorkflow) -> Dict[str, Any]:
    """
    Run one workflow and summarize the outcome.

    A failure anywhere marks the whole import as failed; no partial result
    is reported.
    """
    source = workflow.source
    result: Dict[str, Any] = {
        'source_image_id': workflow.source_image_id,
        'quick_sha256': source.quick_sha256_hash() if source else None,
        'status': 'failed',
        'local_path': None,
        'error': None,
    }

    try:
        state = workflow.run()
    except WorkflowError as e:
        logger.error(f"Import of {workflow.source_image_id} failed: {e}")
        result['error'] = str(e)
        return result

    result['status'] = 'done'
    result['local_path'] = state.archive.local_path
    return result


def import_images(
    images: Sequence[SourceImage],
    ec2: Ec2ResourceClient,
    executor: RemoteExecutor,
    store: ObjectStore,
    settings: WorkflowSettings,
    workers: int = 1,
) -> List[Dict[str, Any]]:
    """
    Import several images, optionally in parallel.

    All workflows share one set of host leases, so concurrent imports on
    the same worker never pick the same device name.

    Returns:
        One result record per image, in input order
    """
    leases = HostLeases()
    workflows = [
        ImageWorkflow(image, ec2, executor, store, settings, leases=leases)
        for image in images
    ]

    if workers <= 1:
        return [import_image(workflow) for workflow in workflows]

    with ThreadPoolExecutor(max_workers=workers) as pool:
        return list(pool.map(import_image, workflows))
