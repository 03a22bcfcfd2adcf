"""
Shared pytest fixtures and configuration for etcd-backup tests.

This module provides common fixtures used across multiple test files.
"""

import subprocess
from pathlib import Path
from typing import Dict, List

import pytest
from loguru import logger

from core.config_loader import build_target
from core.settings import AppSettings


# Logging


@pytest.fixture
def log_messages():
    """Capture loguru output as "LEVEL|message" strings."""
    messages: List[str] = []
    handler_id = logger.add(
        lambda m: messages.append(m.rstrip("\n")),
        level="DEBUG",
        format="{level}|{message}",
    )
    yield messages
    logger.remove(handler_id)


# TLS material and settings


@pytest.fixture
def tls_files(tmp_path) -> Dict[str, Path]:
    """Readable dummy CA, client certificate and key files."""
    pki = tmp_path / "pki"
    pki.mkdir()
    files = {}
    for key, name in (
        ("ETCD_CACERT", "ca.crt"),
        ("ETCD_CERT", "server.crt"),
        ("ETCD_KEY", "server.key"),
    ):
        path = pki / name
        path.write_text(f"dummy {name}\n")
        path.chmod(0o600)
        files[key] = path
    return files


@pytest.fixture
def settings(tmp_path) -> AppSettings:
    """Settings that log nowhere and keep scratch space inside tmp_path."""
    scratch = tmp_path / "scratch"
    scratch.mkdir()
    return AppSettings(
        log_file=None,
        console=False,
        check_cluster=False,
        scratch_root=scratch,
    )


# Configuration values and blocks


@pytest.fixture
def local_values(tmp_path, tls_files) -> Dict[str, str]:
    """Values of a complete local target."""
    return {
        "STORAGE_TYPE": "local",
        "ETCD_BACKUP_FOLDER": str(tmp_path / "backups"),
        "ETCD_ENDPOINTS": "https://127.0.0.1:2379",
        "ETCD_CACERT": str(tls_files["ETCD_CACERT"]),
        "ETCD_CERT": str(tls_files["ETCD_CERT"]),
        "ETCD_KEY": str(tls_files["ETCD_KEY"]),
    }


@pytest.fixture
def s3_values(tls_files) -> Dict[str, str]:
    """Values of a complete S3 target."""
    return {
        "STORAGE_TYPE": "cloud",
        "CLOUD_PROVIDER": "s3",
        "S3_BUCKET": "etcd-backups",
        "S3_FOLDER": "prod",
        "AWS_PROFILE": "backup",
        "ETCD_ENDPOINTS": "https://10.0.0.1:2379,https://10.0.0.2:2379",
        "ETCD_CACERT": str(tls_files["ETCD_CACERT"]),
        "ETCD_CERT": str(tls_files["ETCD_CERT"]),
        "ETCD_KEY": str(tls_files["ETCD_KEY"]),
    }


@pytest.fixture
def gcs_values(tmp_path, tls_files) -> Dict[str, str]:
    """Values of a complete GCS target with a readable key file."""
    credentials = tmp_path / "gcs-key.json"
    credentials.write_text("{}")
    return {
        "STORAGE_TYPE": "cloud",
        "CLOUD_PROVIDER": "gcs",
        "GCS_BUCKET": "etcd-snapshots",
        "GCS_CREDENTIALS": str(credentials),
        "ETCD_ENDPOINTS": "https://127.0.0.1:2379",
        "ETCD_CACERT": str(tls_files["ETCD_CACERT"]),
        "ETCD_CERT": str(tls_files["ETCD_CERT"]),
        "ETCD_KEY": str(tls_files["ETCD_KEY"]),
    }


@pytest.fixture
def azure_values(tls_files) -> Dict[str, str]:
    """Values of a complete Azure target."""
    return {
        "STORAGE_TYPE": "cloud",
        "CLOUD_PROVIDER": "azure",
        "AZURE_STORAGE_ACCOUNT": "etcdbackups",
        "AZURE_CONTAINER": "snapshots",
        "AZURE_STORAGE_ACCOUNT_KEY": "c2VjcmV0LWtleQ==",
        "ETCD_ENDPOINTS": "https://127.0.0.1:2379",
        "ETCD_CACERT": str(tls_files["ETCD_CACERT"]),
        "ETCD_CERT": str(tls_files["ETCD_CERT"]),
        "ETCD_KEY": str(tls_files["ETCD_KEY"]),
    }


@pytest.fixture
def local_target(local_values):
    return build_target(local_values)


@pytest.fixture
def s3_target(s3_values):
    return build_target(s3_values)


def to_block(values: Dict[str, str]) -> str:
    """Render values as KEY=VALUE lines."""
    return "\n".join(f"{key}={value}" for key, value in values.items()) + "\n"


@pytest.fixture
def block_text():
    """Return the to_block() helper."""
    return to_block


# External commands


def completed(returncode: int = 0, stdout: str = "", stderr: str = "") -> subprocess.CompletedProcess:
    """Build a CompletedProcess as returned by subprocess.run()."""
    return subprocess.CompletedProcess(
        args=[], returncode=returncode, stdout=stdout, stderr=stderr
    )


@pytest.fixture
def completed_process():
    """Return the completed() helper."""
    return completed
