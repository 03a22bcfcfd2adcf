"""
Interactive prompts for etcd-backup.

Builds a single TargetSpec by asking the operator for each value on the
terminal. Answers go through the same validation as configuration files.
"""

import getpass
from typing import Callable, Dict, Optional

from core.config_loader import (
    DEFAULT_AZURE_CONTAINER,
    SECRET_KEYS,
    MissingField,
    TargetSpec,
    build_target,
    describe_values,
)
from core.schema import validate_field
from lib.logger import get_logger

# Answers used when the operator just presses enter
PROMPT_DEFAULTS: Dict[str, str] = {
    "STORAGE_TYPE": "local",
    "CLOUD_PROVIDER": "s3",
    "ETCD_BACKUP_FOLDER": "/opt/etcd-backup",
    "ETCD_ENDPOINTS": "https://127.0.0.1:2379",
    "ETCD_CACERT": "/etc/kubernetes/pki/etcd/ca.crt",
    "ETCD_CERT": "/etc/kubernetes/pki/etcd/server.crt",
    "ETCD_KEY": "/etc/kubernetes/pki/etcd/server.key",
    "AWS_PROFILE": "default",
    "AZURE_CONTAINER": DEFAULT_AZURE_CONTAINER,
}

# Keys that are read without echo
HIDDEN_INPUT_KEYS = frozenset({"AZURE_STORAGE_ACCOUNT_KEY"})


class TargetPrompter:
    """
    Asks for one target's values.

    Input functions are injectable so the prompts can be driven from tests.

    Example:
        >>> target = TargetPrompter().prompt_target()
    """

    def __init__(
        self,
        input_func: Callable[[str], str] = input,
        secret_func: Callable[[str], str] = getpass.getpass,
    ):
        self.input_func = input_func
        self.secret_func = secret_func
        self.logger = get_logger()

    def ask(self, key: str, message: str, optional: bool = False) -> str:
        """
        Ask for one value.

        Args:
            key: Configuration key being asked for
            message: Prompt text
            optional: Accept an empty answer when there is no default

        Returns:
            The trimmed answer, the default, or "" for an optional key

        Raises:
            MissingField: If a required value is left empty
            InvalidField: If the answer violates the key's grammar
        """
        default = PROMPT_DEFAULTS.get(key)
        if default is not None:
            prompt = f"{message} [{default}]: "
        else:
            prompt = f"{message}: "

        read = self.secret_func if key in HIDDEN_INPUT_KEYS else self.input_func
        answer = read(prompt).strip()
        if not answer and default is not None:
            answer = default

        if not answer:
            if optional:
                return ""
            raise MissingField(1, key)

        validate_field(key, answer)

        if key in SECRET_KEYS:
            self.logger.info(f"User set {key} to a value (hidden)")
        else:
            self.logger.info(f"User set {key} to '{answer}'")
        return answer

    def collect_values(self) -> Dict[str, str]:
        """Ask all questions in order and return the raw answers."""
        values: Dict[str, str] = {}
        values["STORAGE_TYPE"] = self.ask("STORAGE_TYPE", "Use local or cloud storage? (local/cloud)")

        if values["STORAGE_TYPE"] == "cloud":
            provider = self.ask("CLOUD_PROVIDER", "Which cloud provider? (s3 gcs azure)")
            values["CLOUD_PROVIDER"] = provider
            if provider == "s3":
                values["S3_BUCKET"] = self.ask("S3_BUCKET", "Enter S3 bucket name")
                values["S3_FOLDER"] = self.ask(
                    "S3_FOLDER", "Enter S3 folder prefix (optional)", optional=True
                )
                values["AWS_PROFILE"] = self.ask("AWS_PROFILE", "Enter AWS CLI profile to use")
            elif provider == "gcs":
                values["GCS_BUCKET"] = self.ask("GCS_BUCKET", "Enter GCS bucket name")
                values["GCS_FOLDER"] = self.ask(
                    "GCS_FOLDER", "Enter GCS folder prefix (optional)", optional=True
                )
                values["GCS_CREDENTIALS"] = self.ask(
                    "GCS_CREDENTIALS", "Enter path to GCS service account key"
                )
            else:
                values["AZURE_STORAGE_ACCOUNT"] = self.ask(
                    "AZURE_STORAGE_ACCOUNT", "Enter Azure storage account name"
                )
                values["AZURE_CONTAINER"] = self.ask("AZURE_CONTAINER", "Enter Azure container name")
                values["AZURE_STORAGE_ACCOUNT_KEY"] = self.ask(
                    "AZURE_STORAGE_ACCOUNT_KEY", "Enter Azure storage account key"
                )
        else:
            values["ETCD_BACKUP_FOLDER"] = self.ask("ETCD_BACKUP_FOLDER", "Enter backup folder path")

        values["ETCD_ENDPOINTS"] = self.ask("ETCD_ENDPOINTS", "Enter etcd endpoints")
        values["ETCD_CACERT"] = self.ask("ETCD_CACERT", "Enter path to CA cert")
        values["ETCD_CERT"] = self.ask("ETCD_CERT", "Enter path to client cert")
        values["ETCD_KEY"] = self.ask("ETCD_KEY", "Enter path to client key")
        return values

    def prompt_target(self) -> TargetSpec:
        """
        Prompt for a complete target.

        Raises:
            MissingField: If a required answer is empty
            InvalidField: If an answer violates its grammar
        """
        values = self.collect_values()
        self.logger.debug(f"Interactive answers: {describe_values(values)}")
        return build_target(values, block=1)


def prompt_for_target(prompter: Optional[TargetPrompter] = None) -> TargetSpec:
    """Convenience wrapper around TargetPrompter.prompt_target()."""
    return (prompter or TargetPrompter()).prompt_target()
