"""Tests for the branchd.toml loader and settings model."""

import textwrap
from pathlib import Path

import pytest

from branchd.config.loader import load_settings
from branchd.config.models import DEFAULT_ALLOWED_BRANCH_SETTINGS, BranchdSettings


def _write(tmp_path: Path, body: str) -> Path:
    path = tmp_path / "branchd.toml"
    path.write_text(textwrap.dedent(body))
    return path


class TestLoadSettings:
    """load_settings() reads the [branchd] table over the defaults."""

    def test_overrides(self, tmp_path: Path) -> None:
        path = _write(
            tmp_path,
            """
            [branchd]
            database_url = "postgresql://branchd@db/branchd"
            zfs_pool = "fast"
            branch_port_range = [20000, 20100]
            worker_concurrency = 8
            allowed_branch_settings = ["work_mem"]
            """,
        )
        settings = load_settings(path)
        assert settings.database_url == "postgresql://branchd@db/branchd"
        assert settings.zfs_pool == "fast"
        assert settings.branch_port_range == (20000, 20100)
        assert settings.worker_concurrency == 8
        assert settings.allowed_branch_settings == frozenset({"work_mem"})

    def test_empty_file_uses_defaults(self, tmp_path: Path) -> None:
        settings = load_settings(_write(tmp_path, ""))
        assert settings == BranchdSettings()
        assert settings.restore_port_range == (50000, 59999)
        assert settings.branch_port_range == (15432, 16432)
        assert settings.log_dir == Path("/var/log/branchd")
        assert settings.allowed_branch_settings == DEFAULT_ALLOWED_BRANCH_SETTINGS

    def test_missing_file(self, tmp_path: Path) -> None:
        with pytest.raises(FileNotFoundError, match="branchd config not found"):
            load_settings(tmp_path / "nope.toml")

    def test_invalid_port_range(self, tmp_path: Path) -> None:
        path = _write(
            tmp_path,
            """
            [branchd]
            restore_port_range = [60000, 50000]
            """,
        )
        with pytest.raises(ValueError, match="Invalid branchd config"):
            load_settings(path)

    def test_section_must_be_table(self, tmp_path: Path) -> None:
        with pytest.raises(ValueError, match="must be a table"):
            load_settings(_write(tmp_path, 'branchd = "oops"\n'))

    def test_example_file_loads(self) -> None:
        example = Path(__file__).resolve().parent.parent / "branchd.toml.example"
        assert load_settings(example) == BranchdSettings()


class TestPaths:
    def test_dataset_and_mountpoint(self) -> None:
        settings = BranchdSettings(zfs_pool="tank", data_root=Path("/opt/branchd"))
        assert settings.dataset_name("restore_1") == "tank/restore_1"
        assert settings.restore_data_path("restore_1") == Path("/opt/branchd/restore_1")
