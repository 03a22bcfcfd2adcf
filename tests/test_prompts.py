"""Tests for interactive prompts."""

from pathlib import Path

import pytest

from core.config_loader import AzureDestination, LocalDestination, MissingField, S3Destination
from core.prompts import PROMPT_DEFAULTS, TargetPrompter, prompt_for_target
from core.schema import InvalidField


def scripted(answers):
    """Return an input function that replays answers and records prompts."""
    prompts = []
    remaining = list(answers)

    def _input(prompt):
        prompts.append(prompt)
        return remaining.pop(0)

    _input.prompts = prompts
    return _input


class TestDefaults:
    """Test that pressing enter selects the documented defaults."""

    def test_all_defaults_give_kubeadm_local_target(self):
        answers = scripted([""] * 6)

        target = TargetPrompter(input_func=answers).prompt_target()

        assert isinstance(target.destination, LocalDestination)
        assert target.destination.backup_folder == Path("/opt/etcd-backup")
        assert target.etcd_endpoints == "https://127.0.0.1:2379"
        assert target.etcd_cacert == Path("/etc/kubernetes/pki/etcd/ca.crt")
        assert target.etcd_cert == Path("/etc/kubernetes/pki/etcd/server.crt")
        assert target.etcd_key == Path("/etc/kubernetes/pki/etcd/server.key")

    def test_prompts_show_defaults(self):
        answers = scripted([""] * 6)

        TargetPrompter(input_func=answers).prompt_target()

        assert answers.prompts[0] == "Use local or cloud storage? (local/cloud) [local]: "
        assert "[/opt/etcd-backup]" in answers.prompts[1]

    def test_default_table(self):
        assert PROMPT_DEFAULTS["CLOUD_PROVIDER"] == "s3"
        assert PROMPT_DEFAULTS["AWS_PROFILE"] == "default"
        assert PROMPT_DEFAULTS["AZURE_CONTAINER"] == "etcd-backups"


class TestCloudPrompts:
    """Test cloud provider prompt flows."""

    def test_s3_with_default_provider_and_profile(self, tls_files):
        answers = scripted(
            [
                "cloud",
                "",  # provider -> s3
                "etcd-backups",
                "",  # no folder
                "",  # profile -> default
                "https://10.0.0.1:2379",
                str(tls_files["ETCD_CACERT"]),
                str(tls_files["ETCD_CERT"]),
                str(tls_files["ETCD_KEY"]),
            ]
        )

        target = TargetPrompter(input_func=answers).prompt_target()

        dest = target.destination
        assert isinstance(dest, S3Destination)
        assert dest.folder is None
        assert dest.profile.get_secret_value() == "default"

    def test_azure_key_read_without_echo(self):
        answers = scripted(["cloud", "azure", "etcdbackups", "", "", "", "", ""])
        secrets = scripted(["account-key=="])

        target = TargetPrompter(input_func=answers, secret_func=secrets).prompt_target()

        dest = target.destination
        assert isinstance(dest, AzureDestination)
        assert dest.container == "etcd-backups"
        assert dest.storage_account_key.get_secret_value() == "account-key=="
        assert secrets.prompts == ["Enter Azure storage account key: "]

    def test_required_answer_without_default(self):
        answers = scripted(["cloud", "s3", ""])

        with pytest.raises(MissingField) as exc_info:
            TargetPrompter(input_func=answers).prompt_target()

        assert exc_info.value.key == "S3_BUCKET"

    def test_gcs_requires_credentials(self):
        answers = scripted(["cloud", "gcs", "etcd-snapshots", "", ""])

        with pytest.raises(MissingField) as exc_info:
            TargetPrompter(input_func=answers).prompt_target()

        assert exc_info.value.key == "GCS_CREDENTIALS"


class TestValidation:
    """Test answer validation."""

    def test_invalid_storage_type(self):
        with pytest.raises(InvalidField):
            TargetPrompter(input_func=scripted(["tape"])).prompt_target()

    def test_invalid_provider(self):
        with pytest.raises(InvalidField):
            TargetPrompter(input_func=scripted(["cloud", "dropbox"])).prompt_target()

    def test_invalid_bucket(self):
        with pytest.raises(InvalidField) as exc_info:
            TargetPrompter(input_func=scripted(["cloud", "s3", "Bad_Bucket"])).prompt_target()

        assert exc_info.value.key == "S3_BUCKET"

    def test_answers_are_trimmed(self):
        answers = scripted(["  local  ", " /srv/etcd ", "", "", "", ""])

        target = TargetPrompter(input_func=answers).prompt_target()

        assert target.destination.backup_folder == Path("/srv/etcd")


class TestLogging:
    """Test that answers are logged without secrets."""

    def test_secret_answers_hidden(self, log_messages):
        answers = scripted(["cloud", "s3", "etcd-backups", "", "prod-profile", "", "", "", ""])

        TargetPrompter(input_func=answers).prompt_target()

        joined = "\n".join(log_messages)
        assert "prod-profile" not in joined
        assert "User set AWS_PROFILE to a value (hidden)" in joined
        assert "User set S3_BUCKET to 'etcd-backups'" in joined


def test_prompt_for_target_uses_given_prompter():
    prompter = TargetPrompter(input_func=scripted([""] * 6))

    assert isinstance(prompt_for_target(prompter).destination, LocalDestination)
