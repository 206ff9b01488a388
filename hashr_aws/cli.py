"""
AWS Image Import

Copy Amazon owned AMIs into the HashR account, turn their root volume into
a disk archive on a worker EC2 instance, and download the archives for
hashing.
"""

import argparse
from datetime import datetime, timezone
import json
import logging
import os
import sys
from typing import Any, Dict, List, Optional, Sequence

import boto3

from .config import ImporterConfig, load_config
from .ec2 import Ec2ResourceClient
from .remote import SshCredentials, SshExecutor
from .repo import AwsRepo, import_images
from .storage import S3ObjectStore
from .workflow import WorkflowSettings

logger = logging.getLogger(__name__)


def configure_logging(log_file: str, verbose: bool = False) -> None:
    """Log to stdout and to a file."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=[
            logging.StreamHandler(sys.stdout),
            logging.FileHandler(log_file)
        ]
    )
    # botocore and paramiko are very chatty at debug level
    logging.getLogger('botocore').setLevel(logging.WARNING)
    logging.getLogger('paramiko').setLevel(logging.WARNING)


def parse_arguments(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    """Parse command-line arguments."""
    parser = argparse.ArgumentParser(
        description='Import Amazon owned AMIs as disk archives for hashing'
    )

    parser.add_argument(
        '--config',
        type=str,
        help='JSON file with default values for any of the options below'
    )

    parser.add_argument(
        '--instance-id',
        dest='instance_id',
        type=str,
        help='Worker EC2 instance used to attach volumes and create archives'
    )

    parser.add_argument(
        '--os-name',
        dest='os_name',
        type=str,
        help='Operating system name matched against AMI names (e.g., ubuntu)'
    )

    parser.add_argument(
        '--os-arch',
        dest='os_archs',
        action='append',
        help='Architecture to import (e.g., x86_64); can be repeated'
    )

    parser.add_argument(
        '--image-id',
        dest='image_ids',
        action='append',
        help='Only import this source AMI; can be repeated'
    )

    parser.add_argument(
        '--bucket-name',
        dest='bucket_name',
        type=str,
        help='S3 bucket the archive tool uploads to'
    )

    parser.add_argument(
        '--local-path',
        dest='local_path',
        type=str,
        help='Local directory for downloaded archives (default: /tmp/hashr/aws)'
    )

    parser.add_argument(
        '--remote-path',
        dest='remote_path',
        type=str,
        help='Directory on the worker instance for archives (default: /data)'
    )

    parser.add_argument(
        '--ssh-user',
        dest='ssh_user',
        type=str,
        help='SSH username on the worker instance (default: ec2-user)'
    )

    parser.add_argument(
        '--ssh-key',
        dest='ssh_key',
        type=str,
        help='SSH private key file (default: ~/.ssh/<instance key name>)'
    )

    parser.add_argument(
        '--region',
        type=str,
        help='AWS region (default: from the AWS configuration)'
    )

    parser.add_argument(
        '--poll-interval',
        dest='poll_interval',
        type=float,
        help='Seconds between state polls (default: 1)'
    )

    parser.add_argument(
        '--max-attempts',
        dest='max_attempts',
        type=int,
        help='Polls per wait; archive creation gets twice as many (default: 600)'
    )

    parser.add_argument(
        '--archive-tool',
        dest='archive_tool',
        type=str,
        help='Archive tool path on the worker instance'
    )

    parser.add_argument(
        '--delete-archive',
        dest='delete_archive',
        action='store_true',
        default=None,
        help='Delete the archive from S3 after download (default: retain)'
    )

    parser.add_argument(
        '--workers',
        type=int,
        help='Number of images processed in parallel (default: 1)'
    )

    parser.add_argument(
        '--output-file',
        dest='output_file',
        type=str,
        help='Output file for import results (default: import_result.json)'
    )

    parser.add_argument(
        '--log-file',
        dest='log_file',
        type=str,
        default='hashr_aws.log',
        help='Log file (default: hashr_aws.log)'
    )

    parser.add_argument(
        '--verbose',
        action='store_true',
        help='Enable debug logging'
    )

    return parser.parse_args(argv)


def write_results(output_file: str, results: List[Dict[str, Any]]) -> None:
    """Save per-image import results as JSON."""
    import_result = {
        "import_timestamp": datetime.now(timezone.utc).isoformat(),
        "images": results,
    }

    with open(output_file, 'w') as f:
        json.dump(import_result, f, indent=2)

    logger.info(f"Import results saved to: {output_file}")


def run_import(config: ImporterConfig) -> List[Dict[str, Any]]:
    """
    Set up the AWS and SSH clients and import every discovered image.

    Returns:
        One result record per image
    """
    session = boto3.Session(region_name=config.region) if config.region else boto3.Session()
    ec2 = Ec2ResourceClient(session.client('ec2'))

    instance = ec2.get_instance_detail(config.instance_id)
    source_region = config.region or ec2.get_availability_zone_region()
    key_filename = config.ssh_key or os.path.join(os.path.expanduser('~'), '.ssh', instance.key_name)

    logger.info(f"Worker instance: {instance.instance_id} ({instance.public_dns_name})")
    logger.info(f"Availability Zone: {instance.availability_zone}")
    logger.info(f"Source Region: {source_region}")

    executor = SshExecutor(SshCredentials(config.ssh_user, key_filename))
    store = S3ObjectStore(session.client('s3'))

    settings = WorkflowSettings(
        instance_id=instance.instance_id,
        host=instance.public_dns_name,
        availability_zone=instance.availability_zone,
        source_region=source_region,
        bucket=config.bucket_name,
        local_path=config.local_path,
        remote_path=config.remote_path,
        poll_interval=config.poll_interval,
        max_attempts=config.max_attempts,
        archive_tool=config.archive_tool,
        delete_archive=config.delete_archive,
    )

    repo = AwsRepo(ec2, config.os_name, config.os_archs, config.image_ids)
    images = repo.discover()

    return import_images(images, ec2, executor, store, settings, workers=config.workers)


def main(argv: Optional[Sequence[str]] = None) -> int:
    """Main entry point for the AWS image importer."""
    args = parse_arguments(argv)
    configure_logging(args.log_file, args.verbose)

    logger.info("=" * 80)
    logger.info("Starting AWS Image Import")
    logger.info("=" * 80)

    try:
        config = load_config(args)

        logger.info(f"Instance ID: {config.instance_id}")
        logger.info(f"OS Name: {config.os_name}")
        logger.info(f"Bucket: {config.bucket_name}")
        logger.info(f"Local Path: {config.local_path}")

        results = run_import(config)
        write_results(config.output_file, results)

        failed = [result for result in results if result['status'] != 'done']

        logger.info("")
        logger.info("=" * 80)
        if failed:
            logger.error(f"IMPORT FINISHED WITH {len(failed)} FAILED IMAGE(S)")
            for result in failed:
                logger.error(f"  ✗ {result['source_image_id']}: {result['error']}")
        else:
            logger.info("IMPORT COMPLETED SUCCESSFULLY")
            logger.info(f"Imported {len(results)} image(s)")
        logger.info("=" * 80)

        return 1 if failed else 0

    except Exception as e:
        logger.error("")
        logger.error("=" * 80)
        logger.error("IMPORT FAILED")
        logger.error("=" * 80)
        logger.error(f"Error: {e}")
        logger.error("=" * 80)
        return 1


if __name__ == '__main__':
    sys.exit(main())
