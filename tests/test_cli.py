"""Tests for the command-line entry point."""

import json
from unittest.mock import patch

from hashr_aws import cli


def test_parse_repeated_options():
    args = cli.parse_arguments(['--os-arch', 'x86_64', '--os-arch', 'arm64', '--image-id', 'ami-1'])

    assert args.os_archs == ['x86_64', 'arm64']
    assert args.image_ids == ['ami-1']
    assert args.delete_archive is None
    assert args.log_file == 'hashr_aws.log'


def test_write_results(tmp_path):
    output = tmp_path / 'result.json'

    cli.write_results(str(output), [{'source_image_id': 'ami-1', 'status': 'done'}])

    data = json.loads(output.read_text())
    assert data['images'] == [{'source_image_id': 'ami-1', 'status': 'done'}]
    assert 'import_timestamp' in data


def base_args(tmp_path):
    return [
        '--instance-id', 'i-1',
        '--os-name', 'ubuntu',
        '--bucket-name', 'bucket-x',
        '--output-file', str(tmp_path / 'result.json'),
        '--log-file', str(tmp_path / 'hashr_aws.log'),
    ]


@patch('hashr_aws.cli.configure_logging')
@patch('hashr_aws.cli.run_import')
def test_main_success(run_import, configure_logging, tmp_path):
    run_import.return_value = [{'source_image_id': 'ami-1', 'status': 'done', 'error': None}]

    assert cli.main(base_args(tmp_path)) == 0
    assert (tmp_path / 'result.json').exists()


@patch('hashr_aws.cli.configure_logging')
@patch('hashr_aws.cli.run_import')
def test_main_reports_failed_images(run_import, configure_logging, tmp_path):
    run_import.return_value = [
        {'source_image_id': 'ami-1', 'status': 'done', 'error': None},
        {'source_image_id': 'ami-2', 'status': 'failed', 'error': 'copy rejected'},
    ]

    assert cli.main(base_args(tmp_path)) == 1


@patch('hashr_aws.cli.configure_logging')
def test_main_missing_configuration(configure_logging, tmp_path):
    assert cli.main(['--log-file', str(tmp_path / 'hashr_aws.log')]) == 1
