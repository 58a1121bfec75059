from __future__ import annotations

import logging
import zipfile
from pathlib import Path
from typing import Iterable, List, Tuple

from starlette.concurrency import run_in_threadpool

from .errors import ArchiveBuildError


logger = logging.getLogger(__name__)

# (source path on disk, entry name inside the archive)
ArchiveMember = Tuple[Path, str]


def _dedupe_members(members: Iterable[ArchiveMember]) -> List[ArchiveMember]:
    # Same entry name twice: the later member wins, keeping its position.
    latest: dict[str, int] = {}
    ordered = list(members)
    for index, (_, name) in enumerate(ordered):
        latest[name] = index
    kept = [m for i, m in enumerate(ordered) if latest[m[1]] == i]
    if len(kept) != len(ordered):
        logger.warning("Skipped %d member(s) with duplicate entry names", len(ordered) - len(kept))
    return kept


def build_archive(output_path: Path, members: Iterable[ArchiveMember]) -> int:
    """Write a ZIP at ``output_path`` with each source stored under its entry name.

    Members are streamed from disk by ``ZipFile.write`` with maximum deflate
    compression. The parent directory is created if missing. Returns the size
    of the finished archive; the file is closed by the time this returns.

    Raises ArchiveBuildError (after removing the partial output) if any source
    is missing or unreadable.
    """
    output_path = Path(output_path)
    members = _dedupe_members(members)
    try:
        output_path.parent.mkdir(parents=True, exist_ok=True)
        with zipfile.ZipFile(
            output_path, mode="w", compression=zipfile.ZIP_DEFLATED, compresslevel=9
        ) as zf:
            for source, arcname in members:
                zf.write(source, arcname=arcname)
    except (OSError, zipfile.BadZipFile, ValueError) as exc:
        logger.error("Error creating ZIP archive %s", output_path, exc_info=True)
        output_path.unlink(missing_ok=True)
        raise ArchiveBuildError("Error al procesar los archivos") from exc

    size = output_path.stat().st_size
    logger.info("ZIP archive created: %s (%d bytes)", output_path, size)
    return size


async def build_archive_async(output_path: Path, members: Iterable[ArchiveMember]) -> int:
    """Run ``build_archive`` off the event loop; resolves once the file is closed."""
    return await run_in_threadpool(build_archive, Path(output_path), list(members))
