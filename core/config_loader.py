"""
Configuration loader for etcd-backup.

This module parses the multi-block ``KEY=VALUE`` configuration format into
immutable, validated TargetSpec models (one per block) and provides a
file-backed ConfigLoader for batch runs.

Example configuration::

    # nightly local copy
    STORAGE_TYPE=local
    ETCD_BACKUP_FOLDER=/opt/etcd-backup
    ETCD_ENDPOINTS=https://127.0.0.1:2379
    ETCD_CACERT=/etc/kubernetes/pki/etcd/ca.crt
    ETCD_CERT=/etc/kubernetes/pki/etcd/server.crt
    ETCD_KEY=/etc/kubernetes/pki/etcd/server.key

    # offsite copy
    STORAGE_TYPE=cloud
    CLOUD_PROVIDER=s3
    S3_BUCKET=my-etcd-backups
    AWS_PROFILE=backup
    ...
"""

from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Annotated, Dict, List, Literal, Mapping, Optional, Set, Tuple, Union

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    SecretStr,
    ValidationError,
    field_validator,
)

from core.schema import InvalidField, validate_field
from lib.logger import get_logger
from lib.utils import redact

logger = get_logger()

DEFAULT_AZURE_CONTAINER = "etcd-backups"

KNOWN_KEYS = (
    "STORAGE_TYPE",
    "ETCD_BACKUP_FOLDER",
    "ETCD_ENDPOINTS",
    "ETCD_CACERT",
    "ETCD_CERT",
    "ETCD_KEY",
    "CLOUD_PROVIDER",
    "S3_BUCKET",
    "S3_FOLDER",
    "AWS_PROFILE",
    "GCS_BUCKET",
    "GCS_FOLDER",
    "GCS_CREDENTIALS",
    "AZURE_STORAGE_ACCOUNT",
    "AZURE_CONTAINER",
    "AZURE_STORAGE_ACCOUNT_KEY",
)

# Values of these keys are never written to the log
SECRET_KEYS = frozenset(
    {
        "ETCD_CACERT",
        "ETCD_CERT",
        "ETCD_KEY",
        "AWS_PROFILE",
        "GCS_CREDENTIALS",
        "AZURE_STORAGE_ACCOUNT_KEY",
    }
)

COMMON_KEYS = frozenset(
    {"STORAGE_TYPE", "ETCD_ENDPOINTS", "ETCD_CACERT", "ETCD_CERT", "ETCD_KEY"}
)


class ConfigError(Exception):
    """
    Exception raised for malformed or incomplete configuration documents.

    Fatal to the whole run: no target list exists yet to isolate against.
    """


class MissingField(ConfigError):
    """Raised when a block lacks a field required by its storage type/provider."""

    def __init__(self, block: int, key: str):
        self.block = block
        self.key = key
        super().__init__(f"{key} not set in block {block}")


class NoBlocksFound(ConfigError):
    """Raised when a document contains no configuration blocks."""


class StorageType(str, Enum):
    """Where a snapshot ends up."""

    LOCAL = "local"
    CLOUD = "cloud"


class CloudProvider(str, Enum):
    """Supported object stores."""

    S3 = "s3"
    GCS = "gcs"
    AZURE = "azure"


PROVIDER_KEYS: Dict[CloudProvider, Set[str]] = {
    CloudProvider.S3: {"S3_BUCKET", "S3_FOLDER", "AWS_PROFILE"},
    CloudProvider.GCS: {"GCS_BUCKET", "GCS_FOLDER", "GCS_CREDENTIALS"},
    CloudProvider.AZURE: {
        "AZURE_STORAGE_ACCOUNT",
        "AZURE_CONTAINER",
        "AZURE_STORAGE_ACCOUNT_KEY",
    },
}


def _reject_empty(value):
    if value is None or (isinstance(value, str) and not value.strip()):
        raise ValueError("value must not be empty")
    return value


def _empty_to_none(value):
    if isinstance(value, str) and not value.strip():
        return None
    return value


def _check_grammar(key: str, value: str) -> str:
    # InvalidField is a ValueError, so pydantic reports it as a validation error
    return validate_field(key, value)


class LocalDestination(BaseModel):
    """Snapshot stays in a folder on this host."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    kind: Literal["local"] = "local"
    backup_folder: Path = Field(..., description="Directory receiving snapshots")

    @field_validator("backup_folder", mode="before")
    @classmethod
    def validate_folder(cls, v):
        """Reject empty folder paths."""
        return _reject_empty(v)


class S3Destination(BaseModel):
    """Snapshot is copied to an S3 bucket with the AWS CLI."""

    model_config = ConfigDict(frozen=True, extra="forbid", str_strip_whitespace=True)

    kind: Literal["s3"] = "s3"
    bucket: str = Field(..., description="S3 bucket name")
    folder: Optional[str] = Field(None, description="Optional key prefix")
    profile: SecretStr = Field(..., description="AWS CLI profile")

    @field_validator("bucket")
    @classmethod
    def validate_bucket(cls, v: str) -> str:
        """Validate S3 bucket grammar."""
        return _check_grammar("S3_BUCKET", v)

    @field_validator("folder", mode="before")
    @classmethod
    def validate_folder(cls, v):
        """Treat an empty prefix as no prefix."""
        return _empty_to_none(v)

    @field_validator("profile", mode="before")
    @classmethod
    def validate_profile(cls, v):
        """Reject an empty profile."""
        if isinstance(v, SecretStr):
            v = v.get_secret_value()
        return _reject_empty(v)


class GCSDestination(BaseModel):
    """Snapshot is copied to a GCS bucket with gsutil."""

    model_config = ConfigDict(frozen=True, extra="forbid", str_strip_whitespace=True)

    kind: Literal["gcs"] = "gcs"
    bucket: str = Field(..., description="GCS bucket name")
    folder: Optional[str] = Field(None, description="Optional object prefix")
    credentials_path: Path = Field(
        ..., repr=False, description="Service account key file"
    )

    @field_validator("bucket")
    @classmethod
    def validate_bucket(cls, v: str) -> str:
        """Validate GCS bucket grammar."""
        return _check_grammar("GCS_BUCKET", v)

    @field_validator("folder", mode="before")
    @classmethod
    def validate_folder(cls, v):
        """Treat an empty prefix as no prefix."""
        return _empty_to_none(v)

    @field_validator("credentials_path", mode="before")
    @classmethod
    def validate_credentials(cls, v):
        """Reject an empty credentials path."""
        return _reject_empty(v)


class AzureDestination(BaseModel):
    """Snapshot is uploaded to an Azure Blob Storage container with the Azure CLI."""

    model_config = ConfigDict(frozen=True, extra="forbid", str_strip_whitespace=True)

    kind: Literal["azure"] = "azure"
    storage_account: str = Field(..., description="Storage account name")
    container: str = Field(DEFAULT_AZURE_CONTAINER, description="Blob container")
    storage_account_key: SecretStr = Field(..., description="Storage account key")

    @field_validator("storage_account")
    @classmethod
    def validate_account(cls, v: str) -> str:
        """Validate storage account grammar."""
        return _check_grammar("AZURE_STORAGE_ACCOUNT", v)

    @field_validator("container", mode="before")
    @classmethod
    def validate_container(cls, v):
        """Apply the default container, then validate its grammar."""
        if v is None or (isinstance(v, str) and not v.strip()):
            return DEFAULT_AZURE_CONTAINER
        return _check_grammar("AZURE_CONTAINER", v.strip())

    @field_validator("storage_account_key", mode="before")
    @classmethod
    def validate_key(cls, v):
        """Reject an empty account key."""
        if isinstance(v, SecretStr):
            v = v.get_secret_value()
        return _reject_empty(v)


CloudDestination = Union[S3Destination, GCSDestination, AzureDestination]

Destination = Annotated[
    Union[LocalDestination, S3Destination, GCSDestination, AzureDestination],
    Field(discriminator="kind"),
]


class TargetSpec(BaseModel):
    """
    One backup target, built from one configuration block.

    Immutable. The destination is a tagged union, so fields of exactly one
    backend (and, for cloud targets, one provider) can be populated.
    """

    model_config = ConfigDict(frozen=True, extra="forbid", str_strip_whitespace=True)

    etcd_endpoints: str = Field(..., min_length=1, description="Comma-separated URLs")
    etcd_cacert: Path = Field(..., repr=False, description="CA certificate path")
    etcd_cert: Path = Field(..., repr=False, description="Client certificate path")
    etcd_key: Path = Field(..., repr=False, description="Client key path")
    destination: Destination

    @field_validator("etcd_cacert", "etcd_cert", "etcd_key", mode="before")
    @classmethod
    def validate_tls_paths(cls, v):
        """Reject empty TLS material paths."""
        return _reject_empty(v)

    @property
    def storage_type(self) -> StorageType:
        """Local or cloud."""
        if isinstance(self.destination, LocalDestination):
            return StorageType.LOCAL
        return StorageType.CLOUD

    @property
    def cloud_provider(self) -> Optional[CloudProvider]:
        """Cloud provider, or None for local targets."""
        if self.storage_type is StorageType.LOCAL:
            return None
        return CloudProvider(self.destination.kind)

    @property
    def tls_files(self) -> Dict[str, Path]:
        """TLS material keyed by a human-readable description."""
        return {
            "CA certificate": self.etcd_cacert,
            "Client certificate": self.etcd_cert,
            "Client key": self.etcd_key,
        }

    def describe(self) -> str:
        """Short, secret-free description of where this target delivers."""
        dest = self.destination
        if isinstance(dest, LocalDestination):
            return f"local:{dest.backup_folder}"
        if isinstance(dest, S3Destination):
            return f"s3://{dest.bucket}" + (f"/{dest.folder}" if dest.folder else "")
        if isinstance(dest, GCSDestination):
            return f"gs://{dest.bucket}" + (f"/{dest.folder}" if dest.folder else "")
        return f"azure://{dest.storage_account}/{dest.container}"

    def to_config_block(self) -> str:
        """
        Serialize back to ``KEY=VALUE`` lines.

        Parsing the result yields a TargetSpec equal to this one.
        """
        dest = self.destination
        lines = [f"STORAGE_TYPE={self.storage_type.value}"]
        if isinstance(dest, LocalDestination):
            lines.append(f"ETCD_BACKUP_FOLDER={dest.backup_folder}")
        else:
            lines.append(f"CLOUD_PROVIDER={dest.kind}")

        lines.extend(
            [
                f"ETCD_ENDPOINTS={self.etcd_endpoints}",
                f"ETCD_CACERT={self.etcd_cacert}",
                f"ETCD_CERT={self.etcd_cert}",
                f"ETCD_KEY={self.etcd_key}",
            ]
        )

        if isinstance(dest, S3Destination):
            lines.append(f"S3_BUCKET={dest.bucket}")
            if dest.folder:
                lines.append(f"S3_FOLDER={dest.folder}")
            lines.append(f"AWS_PROFILE={dest.profile.get_secret_value()}")
        elif isinstance(dest, GCSDestination):
            lines.append(f"GCS_BUCKET={dest.bucket}")
            if dest.folder:
                lines.append(f"GCS_FOLDER={dest.folder}")
            lines.append(f"GCS_CREDENTIALS={dest.credentials_path}")
        elif isinstance(dest, AzureDestination):
            lines.append(f"AZURE_STORAGE_ACCOUNT={dest.storage_account}")
            lines.append(f"AZURE_CONTAINER={dest.container}")
            lines.append(
                f"AZURE_STORAGE_ACCOUNT_KEY={dest.storage_account_key.get_secret_value()}"
            )

        return "\n".join(lines) + "\n"


# ============================================================================
# Block parsing
# ============================================================================


@dataclass(frozen=True)
class ConfigBlock:
    """A maximal run of non-blank, non-comment lines."""

    index: int
    start_line: int
    lines: Tuple[str, ...]

    @property
    def text(self) -> str:
        return "\n".join(self.lines)


def _is_boundary(line: str) -> bool:
    stripped = line.strip()
    return not stripped or stripped.startswith("#")


def split_blocks(text: str) -> List[ConfigBlock]:
    """
    Split configuration text into ordered blocks.

    Blank and comment lines close the open block and are otherwise skipped.
    Blocks are numbered from 1 in the order they appear.

    Example:
        >>> [b.index for b in split_blocks("A=1\\n\\nB=2\\n# c\\nC=3")]
        [1, 2, 3]
    """
    blocks: List[ConfigBlock] = []
    current: List[str] = []
    start_line = 0

    for line_no, line in enumerate(text.splitlines(), start=1):
        if _is_boundary(line):
            if current:
                blocks.append(ConfigBlock(len(blocks) + 1, start_line, tuple(current)))
                current = []
            continue
        if not current:
            start_line = line_no
        current.append(line)

    if current:
        blocks.append(ConfigBlock(len(blocks) + 1, start_line, tuple(current)))

    return blocks


def _log_value(key: str, value: str, block: int) -> None:
    if key in SECRET_KEYS:
        logger.debug(f"Block {block}: {key} set to a value (hidden)")
    else:
        logger.debug(f"Block {block}: {key} set to '{value or 'empty'}'")


def read_block_values(block: ConfigBlock) -> Dict[str, str]:
    """
    Read the ``KEY=VALUE`` lines of a block.

    Lines are split on the first ``=`` and both sides trimmed. Unknown keys are
    logged and skipped; a repeated key overrides the earlier value.

    Returns:
        Dict of recognized keys to raw (trimmed) values, in first-seen order
    """
    values: Dict[str, str] = {}
    for line in block.lines:
        key, _, value = line.partition("=")
        key = key.strip()
        value = value.strip()
        if not key:
            continue
        if key not in KNOWN_KEYS:
            logger.warning(f"Unknown config key '{key}' in block {block.index}, ignoring")
            continue
        values[key] = value
        _log_value(key, value, block.index)
    return values


def _require(values: Mapping[str, str], key: str, block: int) -> str:
    value = values.get(key, "")
    if not value:
        raise MissingField(block, key)
    return value


def _relevant_keys(
    storage_type: StorageType, provider: Optional[CloudProvider]
) -> Set[str]:
    keys = set(COMMON_KEYS)
    if storage_type is StorageType.LOCAL:
        keys.add("ETCD_BACKUP_FOLDER")
    else:
        keys.add("CLOUD_PROVIDER")
        if provider is not None:
            keys |= PROVIDER_KEYS[provider]
    return keys


def _build_destination(
    values: Mapping[str, str],
    storage_type: StorageType,
    provider: Optional[CloudProvider],
    block: int,
) -> Dict[str, object]:
    if storage_type is StorageType.LOCAL:
        return {
            "kind": "local",
            "backup_folder": values["ETCD_BACKUP_FOLDER"],
        }

    if provider is CloudProvider.S3:
        return {
            "kind": "s3",
            "bucket": _require(values, "S3_BUCKET", block),
            "folder": values.get("S3_FOLDER") or None,
            "profile": _require(values, "AWS_PROFILE", block),
        }

    if provider is CloudProvider.GCS:
        return {
            "kind": "gcs",
            "bucket": _require(values, "GCS_BUCKET", block),
            "folder": values.get("GCS_FOLDER") or None,
            "credentials_path": _require(values, "GCS_CREDENTIALS", block),
        }

    account = _require(values, "AZURE_STORAGE_ACCOUNT", block)
    account_key = _require(values, "AZURE_STORAGE_ACCOUNT_KEY", block)
    container = values.get("AZURE_CONTAINER", "")
    if not container:
        container = DEFAULT_AZURE_CONTAINER
        logger.info(
            f"Block {block}: AZURE_CONTAINER not specified, "
            f"using default '{DEFAULT_AZURE_CONTAINER}'"
        )
    return {
        "kind": "azure",
        "storage_account": account,
        "container": container,
        "storage_account_key": account_key,
    }


def build_target(values: Mapping[str, str], block: int = 1) -> TargetSpec:
    """
    Build a TargetSpec from recognized ``KEY=VALUE`` pairs.

    Shared by the file parser and the interactive prompts.

    Args:
        values: Recognized keys mapped to trimmed values
        block: 1-based block index used in error messages

    Returns:
        Validated, immutable TargetSpec

    Raises:
        InvalidField: If a value violates its grammar
        MissingField: If a required field is absent or empty
        ConfigError: If the assembled target fails model validation
    """
    for key, value in values.items():
        try:
            validate_field(key, value)
        except InvalidField as e:
            raise e.with_block(block) from e

    storage_type = StorageType(_require(values, "STORAGE_TYPE", block))
    if storage_type is StorageType.LOCAL:
        _require(values, "ETCD_BACKUP_FOLDER", block)
    for key in ("ETCD_ENDPOINTS", "ETCD_CACERT", "ETCD_CERT", "ETCD_KEY"):
        _require(values, key, block)

    provider: Optional[CloudProvider] = None
    if storage_type is StorageType.CLOUD:
        provider = CloudProvider(_require(values, "CLOUD_PROVIDER", block))

    relevant = _relevant_keys(storage_type, provider)
    for key in values:
        if key not in relevant:
            selected = provider.value if provider else storage_type.value
            logger.warning(
                f"Block {block}: {key} does not apply to '{selected}' targets, ignoring"
            )

    destination = _build_destination(values, storage_type, provider, block)

    try:
        return TargetSpec(
            etcd_endpoints=values["ETCD_ENDPOINTS"],
            etcd_cacert=values["ETCD_CACERT"],
            etcd_cert=values["ETCD_CERT"],
            etcd_key=values["ETCD_KEY"],
            destination=destination,
        )
    except ValidationError as e:
        details = "; ".join(
            f"{'.'.join(str(loc) for loc in error['loc'])}: {error['msg']}"
            for error in e.errors()
        )
        raise ConfigError(f"Invalid target in block {block}: {details}") from e


def parse_block(block: ConfigBlock) -> TargetSpec:
    """Parse a single block into a TargetSpec."""
    logger.debug(f"Parsing block {block.index} (line {block.start_line})")
    return build_target(read_block_values(block), block.index)


def parse_document(text: str) -> List[TargetSpec]:
    """
    Parse a whole configuration document.

    Either every block parses or an error is raised; partial results are never
    returned.

    Args:
        text: Configuration text

    Returns:
        TargetSpecs in document order

    Raises:
        NoBlocksFound: If the text contains no blocks
        MissingField: If a block lacks a required field
        InvalidField: If a value violates its grammar
    """
    blocks = split_blocks(text)
    if not blocks:
        raise NoBlocksFound("No valid backup configurations found")

    logger.info(f"Found {len(blocks)} backup configuration(s)")
    return [parse_block(block) for block in blocks]


class ConfigLoader:
    """
    Loads and validates a multi-block configuration file.

    Example:
        >>> loader = ConfigLoader(Path("/etc/etcd-backup/targets.conf"))
        >>> for index, target in enumerate(loader.get_targets(), start=1):
        ...     print(index, target.describe())
    """

    def __init__(self, config_path: Union[str, Path]):
        """
        Initialize ConfigLoader and parse the file.

        Args:
            config_path: Path to the configuration file

        Raises:
            FileNotFoundError: If the file doesn't exist
            ConfigError: If the file can't be read or has no valid blocks
            InvalidField: If a value violates its grammar
        """
        self.config_path = Path(config_path)
        self._blocks: List[ConfigBlock] = []
        self._targets: List[TargetSpec] = []

        self._load_and_validate()

    def _read_text(self) -> str:
        path = self.config_path
        if not path.exists():
            raise FileNotFoundError(f"Configuration file not found: {path}")
        if not path.is_file():
            raise ConfigError(f"Configuration path is not a file: {path}")

        try:
            return path.read_text(encoding="utf-8-sig")
        except UnicodeDecodeError as e:
            raise ConfigError(f"Configuration file {path} is not valid UTF-8: {e}") from e
        except OSError as e:
            raise ConfigError(f"Failed to read configuration file {path}: {e}") from e

    def _check_permissions(self) -> None:
        mode = self.config_path.stat().st_mode
        if mode & 0o077:
            logger.warning(
                f"Configuration file {self.config_path} is accessible by other users "
                f"(mode {oct(mode & 0o777)}); it may contain credentials, "
                f"consider 'chmod 600 {self.config_path}'"
            )

    def _load_and_validate(self) -> None:
        text = self._read_text()
        self._check_permissions()
        logger.info(f"Using configuration file: {self.config_path}")

        self._blocks = split_blocks(text)
        self._targets = parse_document(text)

    def __len__(self) -> int:
        return len(self._targets)

    def get_targets(self) -> List[TargetSpec]:
        """Return all targets in document order."""
        return list(self._targets)

    def get_target(self, index: int) -> Optional[TargetSpec]:
        """
        Return the target parsed from block ``index`` (1-based).

        Returns:
            TargetSpec, or None if there is no such block
        """
        if index < 1 or index > len(self._targets):
            return None
        return self._targets[index - 1]

    def get_raw_blocks(self) -> List[ConfigBlock]:
        """Return the raw blocks, useful for debugging."""
        return list(self._blocks)


def describe_values(values: Mapping[str, str]) -> Dict[str, str]:
    """Return a copy of values with secret keys redacted, for display."""
    return {
        key: redact(value) if key in SECRET_KEYS else value
        for key, value in values.items()
    }
