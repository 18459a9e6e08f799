"""
End-to-end NAS connection test: reachability, mount, read/write (including a
large file simulating a backup), backup directory layout, cleanup.

Stops at the first failing stage.
"""

import logging
import os
import uuid
from dataclasses import dataclass, field
from typing import List

from .conf import FULL, INCREMENTAL, BackupConfig
from .exceptions import MountError
from .mount import MountSession

logger = logging.getLogger(__name__)

DEFAULT_LARGE_FILE_MB = 100


@dataclass
class NasCheckReport:
    stages: List[tuple] = field(default_factory=list)

    @property
    def passed(self) -> bool:
        return bool(self.stages) and all(ok for _, ok, _ in self.stages)

    def record(self, stage: str, ok: bool, detail: str = ""):
        self.stages.append((stage, ok, detail))
        if ok:
            logger.info(f"NAS {stage} test passed {detail}".rstrip())
        else:
            logger.error(f"NAS {stage} test failed: {detail}")
        return ok


class NasConnectionCheck:
    def __init__(self, config: BackupConfig, large_file_mb: int = DEFAULT_LARGE_FILE_MB, session=None):
        self.config = config
        self.large_file_mb = large_file_mb
        self.session = session or MountSession.from_config(config)

    def run(self) -> NasCheckReport:
        report = NasCheckReport()
        nas = self.config.nas

        logger.info("Starting NAS connection test")
        logger.info(f"NAS Host: {nas.host or '(not configured)'}")
        logger.info(f"NAS Share: {nas.share}")
        logger.info(f"Mount Path: {nas.mount_path}")

        if not nas.host:
            report.record("connectivity", False, "NAS_HOST not configured")
            return report

        if not report.record("connectivity", self.session.probe(), f"{nas.host}:{nas.port} ({nas.protocol})"):
            return report

        try:
            result = self.session.acquire()
            if not report.record("mount", self.session.is_mounted, result.message):
                return report
            for warning in result.warnings:
                logger.warning(warning)

            try:
                self.read_write(report)
                if report.passed:
                    self.backup_directories(report)
            except (OSError, MountError) as e:
                report.record("read/write", False, str(e))
        finally:
            self.session.release()

        if report.passed:
            logger.info("All NAS tests passed successfully")
        return report

    def read_write(self, report: NasCheckReport):
        test_dir = self.session.mount_path / f".prs-nas-test-{uuid.uuid4().hex[:8]}"
        try:
            test_dir.mkdir(parents=True)
            report.record("directory creation", True, str(test_dir))

            probe = test_dir / "test.txt"
            content = f"PRS NAS test {uuid.uuid4().hex}"
            probe.write_text(content)
            if not report.record("file write", probe.exists()):
                return
            if not report.record("file read", probe.read_text() == content):
                return

            large = test_dir / "large_test_file"
            chunk = b"\0" * (1024 * 1024)
            with open(large, "wb") as f:
                for _ in range(self.large_file_mb):
                    f.write(chunk)
                f.flush()
                os.fsync(f.fileno())
            size = large.stat().st_size
            report.record(
                "large file write",
                size == self.large_file_mb * 1024 * 1024,
                f"({size} bytes)",
            )
        finally:
            if test_dir.exists():
                for path in test_dir.iterdir():
                    path.unlink()
                test_dir.rmdir()
                logger.info("Test cleanup completed")

    def backup_directories(self, report: NasCheckReport):
        for artifact_class in (FULL, INCREMENTAL):
            directory = self.config.nas.directory_for(artifact_class)
            try:
                directory.mkdir(parents=True, exist_ok=True)
            except OSError as e:
                report.record("backup directory", False, f"{directory}: {e}")
                return
            report.record("backup directory", True, str(directory))
