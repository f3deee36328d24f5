"""Zip archive bundling of a package directory."""

import logging
import os
import zipfile
from pathlib import Path
from typing import Optional, Sequence, Union

from ...core.config import settings
from ...models.sources import SourceRecord
from .packager import CollaboratorOutcome, sha256_file

logger = logging.getLogger(__name__)


class ArchiveBundler:
    """Archives a package directory as ``{bundle_name}-v{version}.zip``."""

    def __init__(
        self,
        bundle_dir: Optional[Union[str, Path]] = None,
        bundle_name: Optional[str] = None,
    ):
        self.bundle_dir = Path(bundle_dir or settings.bundle_dir)
        self.bundle_name = bundle_name or settings.bundle_name

    async def bundle(
        self, records: Sequence[SourceRecord], package_path: Union[str, Path]
    ) -> CollaboratorOutcome:
        package_path = Path(package_path)
        if not (package_path / "package.json").exists():
            return CollaboratorOutcome(
                status="failed", error=f"No package manifest found in {package_path}"
            )

        version = package_path.name.split("-v", 1)[-1]
        self.bundle_dir.mkdir(parents=True, exist_ok=True)
        archive_path = self.bundle_dir / f"{self.bundle_name}-v{version}.zip"
        tmp_path = archive_path.with_suffix(".zip.tmp")

        file_count = 0
        with zipfile.ZipFile(tmp_path, "w", compression=zipfile.ZIP_DEFLATED) as archive:
            for path in sorted(package_path.rglob("*")):
                if path.is_file():
                    arcname = Path(package_path.name) / path.relative_to(package_path)
                    archive.write(path, arcname=arcname.as_posix())
                    file_count += 1
        os.replace(tmp_path, archive_path)

        outcome = CollaboratorOutcome(
            details={
                "archive_path": str(archive_path),
                "archive_checksum": sha256_file(archive_path),
                "archive_size_bytes": archive_path.stat().st_size,
                "files": file_count,
            }
        )
        for record in records:
            outcome.record_details[record.url] = {
                "bundle_path": str(package_path),
                "archive_path": str(archive_path),
            }

        logger.info(f"Bundled {file_count} files into {archive_path}")
        return outcome
