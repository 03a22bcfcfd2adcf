"""
Field grammars for backup target definitions.

Each configuration key that has a naming grammar is checked here before it is
accepted into a TargetSpec. Matching is case-sensitive and anchored.
"""

import re
from typing import Dict, Optional, Pattern

STORAGE_TYPE_REGEX = r"^(local|cloud)$"
CLOUD_PROVIDER_REGEX = r"^(s3|gcs|azure)$"
S3_BUCKET_REGEX = r"^[a-z0-9.-]+$"
GCS_BUCKET_REGEX = r"^[a-z0-9][-a-z0-9._]+$"
AZURE_ACCOUNT_REGEX = r"^[a-z0-9]+$"
AZURE_CONTAINER_REGEX = r"^[a-z0-9]([a-z0-9-]){1,61}[a-z0-9]$"

FIELD_RULES: Dict[str, Pattern[str]] = {
    "STORAGE_TYPE": re.compile(STORAGE_TYPE_REGEX),
    "CLOUD_PROVIDER": re.compile(CLOUD_PROVIDER_REGEX),
    "S3_BUCKET": re.compile(S3_BUCKET_REGEX),
    "GCS_BUCKET": re.compile(GCS_BUCKET_REGEX),
    "AZURE_STORAGE_ACCOUNT": re.compile(AZURE_ACCOUNT_REGEX),
    "AZURE_CONTAINER": re.compile(AZURE_CONTAINER_REGEX),
}

# An empty container means "use the default", so the grammar is skipped
OPTIONAL_RULE_KEYS = {"AZURE_CONTAINER"}

RULE_HINTS = {
    "AZURE_CONTAINER": (
        "Must be 3-63 characters, lowercase letters, numbers, or hyphens, "
        "starting and ending with a letter or number."
    ),
}


class InvalidField(ValueError):
    """
    Raised when a configuration value violates its field grammar.

    Attributes:
        key: Configuration key (e.g. ``S3_BUCKET``)
        value: Offending value
        rule: Regular expression the value had to match
        block: 1-based configuration block index, when known
    """

    def __init__(self, key: str, value: str, rule: str, block: Optional[int] = None):
        self.key = key
        self.value = value
        self.rule = rule
        self.block = block
        super().__init__(self._build_message())

    def _build_message(self) -> str:
        where = f" in block {self.block}" if self.block is not None else ""
        message = f"Invalid {self.key}{where}: '{self.value}'. Must match regex: {self.rule}"
        hint = RULE_HINTS.get(self.key)
        if hint:
            message = f"{message}. {hint}"
        return message

    def with_block(self, block: int) -> "InvalidField":
        """Return a copy of this error annotated with a block index."""
        return InvalidField(self.key, self.value, self.rule, block=block)


def validate_field(key: str, value: str) -> str:
    """
    Check a configuration value against the grammar for its key.

    Keys without a grammar are returned unchanged.

    Args:
        key: Configuration key
        value: Trimmed value

    Returns:
        The value, unchanged

    Raises:
        InvalidField: If the value does not match the key's grammar

    Example:
        >>> validate_field("S3_BUCKET", "my-bucket")
        'my-bucket'
    """
    rule = FIELD_RULES.get(key)
    if rule is None:
        return value
    if key in OPTIONAL_RULE_KEYS and not value:
        return value
    if not rule.match(value):
        raise InvalidField(key, value, rule.pattern)
    return value


def is_valid_s3_bucket(name: str) -> bool:
    """Return True if name is an acceptable S3 bucket name."""
    return bool(FIELD_RULES["S3_BUCKET"].match(name))


def is_valid_gcs_bucket(name: str) -> bool:
    """Return True if name is an acceptable GCS bucket name."""
    return bool(FIELD_RULES["GCS_BUCKET"].match(name))


def is_valid_azure_account(name: str) -> bool:
    """Return True if name is an acceptable Azure storage account name."""
    return bool(FIELD_RULES["AZURE_STORAGE_ACCOUNT"].match(name))


def is_valid_azure_container(name: str) -> bool:
    """Return True if name is an acceptable Azure container name."""
    return bool(FIELD_RULES["AZURE_CONTAINER"].match(name))
