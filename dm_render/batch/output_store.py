"""
Output storage for assembled documents.

LocalOutputStore layout:
    <output_dir>/<batch_id>/dm-<index>.pdf      one file per recipient
    <output_dir>/<batch_id>/batch-<id>.pdf      merged
    <output_dir>/<batch_id>/batch-<id>.zip      optional archive
    <output_dir>/<batch_id>/.spool/             merged pages waiting for their turn
"""

import asyncio
import logging
import zipfile
from pathlib import Path
from typing import List, Optional, Protocol, Sequence, runtime_checkable

from ..config.settings import settings
from ..errors import WriteTimeout
from ..models import OutputMode
from ..page_assembly import AssembledDocument, MergedDocumentWriter, PageAssembler
from .models import DocumentOutput

logger = logging.getLogger(__name__)


@runtime_checkable
class OutputStore(Protocol):
    """Destination for finished documents."""

    async def write_document(
        self,
        batch_id: str,
        document: AssembledDocument,
        timeout: Optional[float] = None,
    ) -> DocumentOutput: ...

    async def write_archive(
        self,
        batch_id: str,
        outputs: Sequence[DocumentOutput],
        timeout: Optional[float] = None,
    ) -> Optional[str]: ...

    def open_merged(self, batch_id: str, assembler: PageAssembler) -> MergedDocumentWriter: ...

    async def finish_merged(
        self,
        batch_id: str,
        writer: MergedDocumentWriter,
        timeout: Optional[float] = None,
    ) -> Optional[DocumentOutput]: ...


def merged_filename(batch_id: str) -> str:
    return f"batch-{batch_id}.pdf"


def document_filename(batch_id: str, document: AssembledDocument) -> str:
    if document.mode == OutputMode.MERGED or len(document.recipient_indices) != 1:
        return merged_filename(batch_id)
    return f"dm-{document.recipient_indices[0]}.pdf"


class LocalOutputStore:
    """Writes documents under a local directory, one folder per batch."""

    def __init__(self, output_dir: Optional[Path] = None, write_timeout: Optional[float] = None):
        self.output_dir = Path(output_dir or settings.output_dir)
        self.write_timeout = write_timeout if write_timeout is not None else settings.write_timeout

    def batch_dir(self, batch_id: str) -> Path:
        return self.output_dir / batch_id

    async def write_document(self, batch_id, document: AssembledDocument, timeout=None) -> DocumentOutput:
        """
        Write one document.

        Raises:
            WriteTimeout: The write did not finish within ``timeout``
        """
        path = self.batch_dir(batch_id) / document_filename(batch_id, document)
        await self._bounded(self._write_bytes, path, document.data, timeout=timeout)
        return DocumentOutput(
            path=str(path),
            recipient_indices=document.recipient_indices,
            page_count=document.page_count,
            size_bytes=document.size_bytes,
        )

    async def write_archive(self, batch_id, outputs: Sequence[DocumentOutput], timeout=None) -> Optional[str]:
        """Bundle written documents into batch-<id>.zip."""
        if not outputs:
            return None
        path = self.batch_dir(batch_id) / f"batch-{batch_id}.zip"
        files = [Path(output.path) for output in outputs]
        await self._bounded(self._write_zip, path, files, timeout=timeout)
        logger.info(f"Archived {len(files)} documents to {path}")
        return str(path)

    def open_merged(self, batch_id, assembler: PageAssembler) -> MergedDocumentWriter:
        """Writer streaming the merged document straight into the batch folder."""
        batch_dir = self.batch_dir(batch_id)
        return assembler.open_merged(
            batch_dir / merged_filename(batch_id),
            batch_dir / ".spool",
            title=f"Batch {batch_id}",
        )

    async def finish_merged(self, batch_id, writer: MergedDocumentWriter, timeout=None) -> Optional[DocumentOutput]:
        """
        Close the merged document. Returns None when no page was written.

        Raises:
            WriteTimeout: Flushing the document did not finish within ``timeout``
        """
        indices = await self._bounded(self._finish_writer, writer.path, writer, timeout=timeout)
        if not indices:
            return None
        return DocumentOutput(
            path=str(writer.path),
            recipient_indices=indices,
            page_count=len(indices),
            size_bytes=writer.path.stat().st_size,
        )

    async def _bounded(self, func, path: Path, payload, timeout: Optional[float]):
        timeout = self.write_timeout if timeout is None else timeout
        try:
            return await asyncio.wait_for(asyncio.to_thread(func, path, payload), timeout)
        except asyncio.TimeoutError:
            raise WriteTimeout(timeout, str(path)) from None

    @staticmethod
    def _write_bytes(path: Path, data: bytes) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = path.with_suffix(path.suffix + ".tmp")
        tmp_path.write_bytes(data)
        tmp_path.replace(path)

    @staticmethod
    def _finish_writer(path: Path, writer: MergedDocumentWriter):
        return writer.finish()

    @staticmethod
    def _write_zip(path: Path, files: List[Path]) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        with zipfile.ZipFile(path, "w", compression=zipfile.ZIP_DEFLATED) as archive:
            for file_path in files:
                archive.write(file_path, arcname=file_path.name)
