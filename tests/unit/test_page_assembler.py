"""Tests for PageAssembler."""

import io
import re

import pytest
from PIL import Image

from dm_render.errors import EmptyBatch, ImageTooSmall
from dm_render.models import OutputMode
from dm_render.page_assembly import PageAssembler
from dm_render.print_formats import PrintFormat


def png(width, height, color=(200, 30, 30)):
    buffer = io.BytesIO()
    Image.new("RGB", (width, height), color).save(buffer, format="PNG")
    return buffer.getvalue()


@pytest.fixture
def assembler():
    return PageAssembler(max_upscale=2.0, allow_upscale=False, author="tests")


@pytest.fixture
def card():
    # 2.25 x 1.25 in page incl. bleed at 100 dpi -> 225 x 125 px
    return PrintFormat("card", width=2.0, height=1.0, bleed=0.125, dpi=100)


class TestAssemblePage:

    def test_exact_size(self, assembler, card):
        page = assembler.assemble_page(png(225, 125), card, recipient_index=3)

        assert page.pixel_size == (225, 125)
        assert page.recipient_index == 3
        assert page.effective_dpi == pytest.approx(100)
        assert not page.upscaled
        with Image.open(io.BytesIO(page.image_bytes)) as image:
            assert image.size == (225, 125)

    def test_cover_fit_crops_to_target(self, assembler, card):
        # Taller aspect: width drives the scale, height gets cropped
        page = assembler.assemble_page(png(450, 400), card)

        with Image.open(io.BytesIO(page.image_bytes)) as image:
            assert image.size == (225, 125)
        assert page.effective_dpi == pytest.approx(200)

    def test_moderate_upscale_allowed(self, assembler, card):
        page = assembler.assemble_page(png(150, 84), card)

        assert page.pixel_size == (225, 125)
        assert page.effective_dpi < 100

    def test_too_small_rejected(self, assembler, card):
        with pytest.raises(ImageTooSmall) as exc_info:
            assembler.assemble_page(png(100, 50), card)

        assert exc_info.value.required_dpi == pytest.approx(50)
        assert exc_info.value.format_name == "card"

    def test_too_small_allowed_with_flag(self, card):
        assembler = PageAssembler(max_upscale=2.0, allow_upscale=True)

        page = assembler.assemble_page(png(100, 50), card)

        assert page.upscaled
        assert page.pixel_size == (225, 125)

    def test_max_upscale_validated(self):
        with pytest.raises(ValueError):
            PageAssembler(max_upscale=0.5)


class TestAssembleDocument:

    def test_empty_raises(self, assembler):
        with pytest.raises(EmptyBatch):
            assembler.assemble_document([], OutputMode.MERGED)

    def test_merged_preserves_order(self, assembler, card):
        pages = [assembler.assemble_page(png(225, 125), card, i) for i in (2, 0, 1)]

        documents = assembler.assemble_document(pages, OutputMode.MERGED)

        assert len(documents) == 1
        document = documents[0]
        assert document.page_count == 3
        assert document.recipient_indices == (2, 0, 1)
        assert document.data.startswith(b"%PDF")

    def test_one_file_per_recipient(self, assembler, card):
        pages = [assembler.assemble_page(png(225, 125), card, i) for i in range(3)]

        documents = assembler.assemble_document(pages, OutputMode.ONE_FILE_PER_RECIPIENT)

        assert [d.recipient_indices for d in documents] == [(0,), (1,), (2,)]
        assert all(d.page_count == 1 for d in documents)
        assert all(d.mode == OutputMode.ONE_FILE_PER_RECIPIENT for d in documents)

    def test_pdf_page_size_is_bleed_page(self, assembler, card):
        page = assembler.assemble_page(png(225, 125), card)

        document = assembler.assemble_document([page], "merged")[0]

        # 2.25in x 1.25in = 162 x 90 points
        assert re.search(rb"/MediaBox \[\s*0 0 162 90\s*\]", document.data)

    def test_metadata(self, assembler, card):
        page = assembler.assemble_page(png(225, 125), card)
        document = assembler.assemble_document([page], OutputMode.MERGED)[0]
        assert b"tests" in document.data


class TestMergedDocumentWriter:

    @pytest.fixture
    def writer(self, assembler, tmp_path):
        return assembler.open_merged(tmp_path / "merged.pdf", tmp_path / ".spool", title="batch-test")

    def _page(self, assembler, card, index):
        return assembler.assemble_page(png(225, 125), card, index)

    def test_out_of_order_pages_written_in_index_order(self, writer, assembler, card, tmp_path):
        writer.add(self._page(assembler, card, 2))
        writer.add(self._page(assembler, card, 3))
        assert writer.spooled_count == 2
        assert writer.page_count == 0

        writer.add(self._page(assembler, card, 0))
        writer.skip(1)

        assert writer.spooled_count == 0
        assert writer.page_count == 3
        assert not list((tmp_path / ".spool").glob("page-*.png"))

        assert writer.finish() == (0, 2, 3)
        data = (tmp_path / "merged.pdf").read_bytes()
        assert data.startswith(b"%PDF")
        assert len(re.findall(rb"/Type /Page\b", data)) == 3
        assert b"batch-test" in data
        assert not (tmp_path / ".spool").exists()
        assert not (tmp_path / "merged.pdf.tmp").exists()

    def test_finish_drains_pages_behind_a_gap(self, writer, assembler, card, tmp_path):
        writer.add(self._page(assembler, card, 4))
        writer.add(self._page(assembler, card, 1))

        assert writer.finish() == (1, 4)
        assert not (tmp_path / ".spool").exists()

    def test_finish_without_pages(self, writer, tmp_path):
        writer.skip(0)

        assert writer.finish() == ()
        assert not (tmp_path / "merged.pdf").exists()
        assert not writer.is_open

    def test_discard_removes_partial_files(self, writer, assembler, card, tmp_path):
        writer.add(self._page(assembler, card, 0))
        writer.add(self._page(assembler, card, 2))

        writer.discard()

        assert not (tmp_path / "merged.pdf").exists()
        assert not (tmp_path / "merged.pdf.tmp").exists()
        assert not (tmp_path / ".spool").exists()

    def test_closed_writer_rejects_pages(self, writer, assembler, card):
        writer.add(self._page(assembler, card, 0))
        writer.finish()

        with pytest.raises(RuntimeError):
            writer.add(self._page(assembler, card, 1))
