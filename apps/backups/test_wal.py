"""
Tests for WAL segment listing and incremental backup bundling.
"""

import tarfile
from datetime import datetime

import pytest

from apps.backups.exceptions import PreconditionError
from apps.backups.wal import WalArchiver, list_segments, segments_between

BASE_TIME = datetime(2024, 6, 15, 2, 0, 0)


@pytest.fixture
def wal_dir(backup_config):
    backup_config.wal_archive_dir.mkdir(parents=True)
    return backup_config.wal_archive_dir


def add_segment(wal_dir, name, archived_at, touch):
    path = wal_dir / name
    path.write_bytes(b"\0" * 128)
    touch(path, archived_at)
    return path


class TestSegments:
    def test_list_segments_filters_and_orders(self, wal_dir, touch):
        add_segment(wal_dir, "000000010000000000000002", datetime(2024, 6, 15, 3), touch)
        add_segment(wal_dir, "000000010000000000000001", datetime(2024, 6, 15, 1), touch)
        add_segment(wal_dir, "000000010000000000000003.wal", datetime(2024, 6, 15, 4), touch)
        (wal_dir / "README").write_text("not a segment")

        segments = list_segments(wal_dir)

        assert [s.name for s in segments] == [
            "000000010000000000000001",
            "000000010000000000000002",
            "000000010000000000000003.wal",
        ]
        assert segments[2].sequence == "000000010000000000000003"

    def test_missing_directory(self, tmp_path):
        assert list_segments(tmp_path / "missing") == []

    def test_segments_between(self, wal_dir, touch):
        add_segment(wal_dir, "000000010000000000000001", datetime(2024, 6, 15, 1), touch)
        add_segment(wal_dir, "000000010000000000000002", datetime(2024, 6, 15, 3), touch)
        add_segment(wal_dir, "000000010000000000000003", datetime(2024, 6, 15, 5), touch)
        segments = list_segments(wal_dir)

        after_base = segments_between(segments, BASE_TIME)
        up_to_target = segments_between(segments, BASE_TIME, until=datetime(2024, 6, 15, 4))

        assert [s.name[-1] for s in after_base] == ["2", "3"]
        assert [s.name[-1] for s in up_to_target] == ["2"]


class TestWalArchiver:
    def test_requires_base_backup(self, backup_config):
        with pytest.raises(PreconditionError):
            WalArchiver(backup_config).produce()

    def test_no_new_segments(self, backup_config, wal_dir, make_artifact, touch):
        make_artifact(backup_config.full_dir, "full", BASE_TIME)
        add_segment(wal_dir, "000000010000000000000001", datetime(2024, 6, 15, 1), touch)

        assert WalArchiver(backup_config).produce() is None
        assert not backup_config.incremental_dir.exists() or not any(backup_config.incremental_dir.iterdir())

    def test_bundles_segments_since_latest_full(self, backup_config, wal_dir, make_artifact, touch):
        make_artifact(backup_config.full_dir, "full", datetime(2024, 6, 14, 2))
        make_artifact(backup_config.full_dir, "full", BASE_TIME)
        add_segment(wal_dir, "000000010000000000000001", datetime(2024, 6, 15, 1), touch)
        add_segment(wal_dir, "000000010000000000000002", datetime(2024, 6, 15, 3), touch)
        add_segment(wal_dir, "000000010000000000000003", datetime(2024, 6, 15, 4), touch)

        archiver = WalArchiver(backup_config, now=lambda: datetime(2024, 6, 15, 6, 15))
        artifact = archiver.produce()

        assert artifact.name == "prs_incremental_backup_20240615_061500.tar.gz"
        assert artifact.artifact_class == "incremental"
        assert artifact.sidecar.exists()
        with tarfile.open(artifact.path, "r:gz") as tar:
            assert sorted(tar.getnames()) == ["000000010000000000000002", "000000010000000000000003"]
        # Segments are only read
        assert len(list_segments(wal_dir)) == 3
        assert list(backup_config.incremental_dir.glob("*.partial")) == []
