"""
Tests for the configuration loader.

Tests cover:
- Block splitting
- KEY=VALUE reading
- Target construction per storage type and provider
- Whole-document parsing
- File-backed ConfigLoader
"""

from pathlib import Path

import pytest
from pydantic import ValidationError

from core.config_loader import (
    DEFAULT_AZURE_CONTAINER,
    AzureDestination,
    ConfigBlock,
    ConfigError,
    ConfigLoader,
    GCSDestination,
    LocalDestination,
    MissingField,
    NoBlocksFound,
    S3Destination,
    StorageType,
    build_target,
    describe_values,
    parse_document,
    read_block_values,
    split_blocks,
)
from core.schema import InvalidField


# Block splitting
class TestSplitBlocks:
    """Tests for split_blocks()."""

    def test_blocks_separated_by_blank_lines(self):
        text = "A=1\nB=2\n\nC=3\n\n\nD=4\n"

        blocks = split_blocks(text)

        assert [b.lines for b in blocks] == [("A=1", "B=2"), ("C=3",), ("D=4",)]
        assert [b.index for b in blocks] == [1, 2, 3]

    def test_comment_lines_close_blocks(self):
        text = "# header\nA=1\n# between\nB=2\n"

        blocks = split_blocks(text)

        assert len(blocks) == 2
        assert blocks[0].lines == ("A=1",)
        assert blocks[1].lines == ("B=2",)

    def test_whitespace_only_lines_are_blank(self):
        assert len(split_blocks("A=1\n   \t\nB=2")) == 2

    def test_indented_comment_is_boundary(self):
        assert len(split_blocks("A=1\n    # note\nB=2")) == 2

    def test_records_start_line(self):
        blocks = split_blocks("# c\n\nA=1\nB=2\n\nC=3")

        assert blocks[0].start_line == 3
        assert blocks[1].start_line == 6

    def test_empty_and_comment_only_text(self):
        assert split_blocks("") == []
        assert split_blocks("# only\n\n# comments\n") == []

    def test_block_count_matches_blank_separated_runs(self, block_text, local_values, s3_values):
        """Three well-formed blocks give exactly three blocks."""
        text = "\n".join(
            [
                "# first",
                block_text(local_values),
                "",
                block_text(s3_values),
                "# third",
                block_text(local_values),
            ]
        )

        assert len(split_blocks(text)) == 3

    def test_block_text_property(self):
        block = ConfigBlock(index=1, start_line=1, lines=("A=1", "B=2"))
        assert block.text == "A=1\nB=2"


# Reading values
class TestReadBlockValues:
    """Tests for read_block_values()."""

    def _block(self, *lines):
        return ConfigBlock(index=2, start_line=1, lines=tuple(lines))

    def test_splits_on_first_equals_and_trims(self):
        values = read_block_values(
            self._block("  ETCD_ENDPOINTS = https://a:2379 ", "AZURE_STORAGE_ACCOUNT_KEY=abc==")
        )

        assert values == {
            "ETCD_ENDPOINTS": "https://a:2379",
            "AZURE_STORAGE_ACCOUNT_KEY": "abc==",
        }

    def test_unknown_key_is_warned_and_ignored(self, log_messages):
        values = read_block_values(self._block("STORAGE_TYPE=local", "RETENTION=3"))

        assert values == {"STORAGE_TYPE": "local"}
        assert "WARNING|Unknown config key 'RETENTION' in block 2, ignoring" in log_messages

    def test_last_duplicate_wins(self):
        values = read_block_values(self._block("S3_BUCKET=first", "S3_BUCKET=second"))
        assert values == {"S3_BUCKET": "second"}

    def test_line_without_equals_has_empty_value(self):
        assert read_block_values(self._block("S3_FOLDER")) == {"S3_FOLDER": ""}

    def test_empty_key_is_skipped(self):
        assert read_block_values(self._block("=value")) == {}

    def test_secret_values_are_not_logged(self, log_messages):
        read_block_values(self._block("AWS_PROFILE=topsecret", "ETCD_KEY=/pki/key.pem"))

        joined = "\n".join(log_messages)
        assert "topsecret" not in joined
        assert "/pki/key.pem" not in joined
        assert "AWS_PROFILE set to a value (hidden)" in joined


# Building targets
class TestBuildTarget:
    """Tests for build_target()."""

    def test_local_target(self, local_values):
        target = build_target(local_values)

        assert isinstance(target.destination, LocalDestination)
        assert target.storage_type is StorageType.LOCAL
        assert target.cloud_provider is None
        assert target.destination.backup_folder == Path(local_values["ETCD_BACKUP_FOLDER"])

    def test_s3_target(self, s3_values):
        target = build_target(s3_values)

        dest = target.destination
        assert isinstance(dest, S3Destination)
        assert dest.bucket == "etcd-backups"
        assert dest.folder == "prod"
        assert dest.profile.get_secret_value() == "backup"
        assert target.describe() == "s3://etcd-backups/prod"

    def test_s3_without_folder(self, s3_values):
        s3_values["S3_FOLDER"] = ""

        target = build_target(s3_values)

        assert target.destination.folder is None
        assert target.describe() == "s3://etcd-backups"

    def test_gcs_target(self, gcs_values):
        target = build_target(gcs_values)

        assert isinstance(target.destination, GCSDestination)
        assert target.destination.credentials_path == Path(gcs_values["GCS_CREDENTIALS"])
        assert target.describe() == "gs://etcd-snapshots"

    def test_azure_target(self, azure_values):
        target = build_target(azure_values)

        assert isinstance(target.destination, AzureDestination)
        assert target.destination.container == "snapshots"
        assert target.describe() == "azure://etcdbackups/snapshots"

    def test_azure_without_container_uses_default(self, azure_values, log_messages):
        del azure_values["AZURE_CONTAINER"]

        target = build_target(azure_values, block=4)

        assert target.destination.container == DEFAULT_AZURE_CONTAINER == "etcd-backups"
        assert any("AZURE_CONTAINER not specified" in m for m in log_messages)

    def test_azure_with_empty_container_uses_default(self, azure_values):
        azure_values["AZURE_CONTAINER"] = ""
        assert build_target(azure_values).destination.container == "etcd-backups"

    def test_s3_missing_profile_raises_missing_field(self, s3_values):
        del s3_values["AWS_PROFILE"]

        with pytest.raises(MissingField) as exc_info:
            build_target(s3_values, block=2)

        assert exc_info.value.key == "AWS_PROFILE"
        assert exc_info.value.block == 2
        assert str(exc_info.value) == "AWS_PROFILE not set in block 2"

    @pytest.mark.parametrize(
        "missing",
        ["STORAGE_TYPE", "ETCD_BACKUP_FOLDER", "ETCD_ENDPOINTS", "ETCD_CACERT", "ETCD_CERT", "ETCD_KEY"],
    )
    def test_local_missing_required_field(self, local_values, missing):
        del local_values[missing]

        with pytest.raises(MissingField) as exc_info:
            build_target(local_values)

        assert exc_info.value.key == missing

    def test_empty_required_value_counts_as_missing(self, local_values):
        local_values["ETCD_ENDPOINTS"] = ""

        with pytest.raises(MissingField):
            build_target(local_values)

    def test_cloud_requires_provider(self, s3_values):
        del s3_values["CLOUD_PROVIDER"]

        with pytest.raises(MissingField) as exc_info:
            build_target(s3_values)

        assert exc_info.value.key == "CLOUD_PROVIDER"

    @pytest.mark.parametrize(
        "fixture_name,missing",
        [
            ("s3_values", "S3_BUCKET"),
            ("gcs_values", "GCS_BUCKET"),
            ("gcs_values", "GCS_CREDENTIALS"),
            ("azure_values", "AZURE_STORAGE_ACCOUNT"),
            ("azure_values", "AZURE_STORAGE_ACCOUNT_KEY"),
        ],
    )
    def test_provider_required_fields(self, request, fixture_name, missing):
        values = request.getfixturevalue(fixture_name)
        del values[missing]

        with pytest.raises(MissingField) as exc_info:
            build_target(values)

        assert exc_info.value.key == missing

    def test_invalid_value_raises_invalid_field_with_block(self, s3_values):
        s3_values["S3_BUCKET"] = "Invalid_Bucket"

        with pytest.raises(InvalidField) as exc_info:
            build_target(s3_values, block=5)

        assert exc_info.value.block == 5
        assert exc_info.value.key == "S3_BUCKET"

    def test_invalid_storage_type(self, local_values):
        local_values["STORAGE_TYPE"] = "nfs"

        with pytest.raises(InvalidField):
            build_target(local_values)

    def test_fields_of_other_backends_are_ignored(self, local_values, log_messages):
        """A local block with cloud keys yields a purely local target."""
        local_values["S3_BUCKET"] = "stray-bucket"
        local_values["CLOUD_PROVIDER"] = "s3"

        target = build_target(local_values, block=1)

        assert isinstance(target.destination, LocalDestination)
        assert "stray-bucket" not in target.model_dump_json()
        assert any("S3_BUCKET does not apply" in m for m in log_messages)

    def test_fields_of_other_providers_are_ignored(self, s3_values):
        s3_values["GCS_BUCKET"] = "other-bucket"
        s3_values["AZURE_STORAGE_ACCOUNT"] = "otheraccount"

        target = build_target(s3_values)

        assert isinstance(target.destination, S3Destination)
        dumped = target.model_dump_json()
        assert "other-bucket" not in dumped
        assert "otheraccount" not in dumped

    def test_target_is_immutable(self, local_values):
        target = build_target(local_values)

        with pytest.raises(ValidationError):
            target.etcd_endpoints = "https://other:2379"

    def test_repr_hides_secrets(self, azure_values, tls_files):
        target = build_target(azure_values)

        text = repr(target)
        assert azure_values["AZURE_STORAGE_ACCOUNT_KEY"] not in text
        assert str(tls_files["ETCD_KEY"]) not in text

    def test_tls_files(self, local_values):
        target = build_target(local_values)

        assert list(target.tls_files) == ["CA certificate", "Client certificate", "Client key"]
        assert target.tls_files["Client key"] == Path(local_values["ETCD_KEY"])


# Round trip
class TestToConfigBlock:
    """Tests for TargetSpec.to_config_block()."""

    @pytest.mark.parametrize("fixture_name", ["local_values", "s3_values", "gcs_values", "azure_values"])
    def test_serialized_block_parses_to_equal_target(self, request, fixture_name):
        target = build_target(request.getfixturevalue(fixture_name))

        assert parse_document(target.to_config_block()) == [target]


# Whole documents
class TestParseDocument:
    """Tests for parse_document()."""

    def test_parses_blocks_in_order(self, block_text, local_values, s3_values, azure_values):
        text = "\n\n".join(block_text(v) for v in (local_values, s3_values, azure_values))

        targets = parse_document(text)

        assert [t.storage_type.value for t in targets] == ["local", "cloud", "cloud"]
        assert [t.describe().split(":")[0] for t in targets] == ["local", "s3", "azure"]

    def test_no_blocks_raises(self):
        with pytest.raises(NoBlocksFound) as exc_info:
            parse_document("# nothing here\n\n")

        assert "No valid backup configurations found" in str(exc_info.value)

    def test_no_blocks_is_config_error(self):
        assert issubclass(NoBlocksFound, ConfigError)
        assert issubclass(MissingField, ConfigError)

    def test_one_bad_block_fails_whole_document(self, block_text, local_values, s3_values):
        del s3_values["AWS_PROFILE"]
        text = block_text(local_values) + "\n" + block_text(s3_values)

        with pytest.raises(MissingField) as exc_info:
            parse_document(text)

        assert exc_info.value.block == 2

    def test_logs_block_count(self, block_text, local_values, log_messages):
        parse_document(block_text(local_values) + "\n" + block_text(local_values))

        assert "INFO|Found 2 backup configuration(s)" in log_messages


# ConfigLoader
class TestConfigLoader:
    """Tests for the file-backed ConfigLoader."""

    @pytest.fixture
    def config_file(self, tmp_path, block_text, local_values, s3_values):
        path = tmp_path / "targets.conf"
        path.write_text(
            "# etcd backups\n" + block_text(local_values) + "\n" + block_text(s3_values)
        )
        path.chmod(0o600)
        return path

    def test_loads_targets(self, config_file):
        loader = ConfigLoader(config_file)

        assert len(loader) == 2
        assert isinstance(loader.get_targets()[0].destination, LocalDestination)
        assert isinstance(loader.get_targets()[1].destination, S3Destination)

    def test_get_target_is_one_based(self, config_file):
        loader = ConfigLoader(config_file)

        assert loader.get_target(1) == loader.get_targets()[0]
        assert loader.get_target(2) == loader.get_targets()[1]
        assert loader.get_target(0) is None
        assert loader.get_target(3) is None

    def test_get_raw_blocks(self, config_file):
        blocks = ConfigLoader(config_file).get_raw_blocks()

        assert len(blocks) == 2
        assert blocks[0].lines[0] == "STORAGE_TYPE=local"

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            ConfigLoader(tmp_path / "absent.conf")

    def test_directory_is_rejected(self, tmp_path):
        with pytest.raises(ConfigError):
            ConfigLoader(tmp_path)

    def test_invalid_utf8(self, tmp_path):
        path = tmp_path / "bad.conf"
        path.write_bytes(b"STORAGE_TYPE=\xff\xfe\n")

        with pytest.raises(ConfigError):
            ConfigLoader(path)

    def test_utf8_bom_is_ignored(self, tmp_path, block_text, local_values):
        path = tmp_path / "bom.conf"
        path.write_bytes(b"\xef\xbb\xbf" + block_text(local_values).encode("utf-8"))

        assert len(ConfigLoader(path)) == 1

    def test_warns_on_loose_permissions(self, config_file, log_messages):
        config_file.chmod(0o644)

        ConfigLoader(config_file)

        assert any("accessible by other users" in m for m in log_messages)

    def test_does_not_change_permissions(self, config_file):
        config_file.chmod(0o640)

        ConfigLoader(config_file)

        assert config_file.stat().st_mode & 0o777 == 0o640


class TestDescribeValues:
    """Tests for describe_values()."""

    def test_redacts_secrets(self, s3_values):
        described = describe_values(s3_values)

        assert described["AWS_PROFILE"] == "<set (hidden)>"
        assert described["ETCD_KEY"] == "<set (hidden)>"
        assert described["S3_BUCKET"] == "etcd-backups"
