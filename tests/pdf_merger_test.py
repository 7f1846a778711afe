from io import BytesIO
import threading

import pytest
from pypdf import PdfReader, PdfWriter

from chunk_merger_engine import (
    Chunk,
    CollectionError,
    FileDescriptor,
    ParseError,
    PDFChunkMerger,
    RunCancelled,
)


def _chunk(*descriptors, number=1):
    chunk = Chunk(number=number)
    for descriptor in descriptors:
        chunk.add(descriptor)
    return chunk


def _encrypted_pdf(user_password: str) -> bytes:
    writer = PdfWriter()
    writer.add_blank_page(width=150, height=72)
    writer.encrypt(user_password=user_password, owner_password="owner-secret")
    buffer = BytesIO()
    writer.write(buffer)
    return buffer.getvalue()


def test_merge_keeps_member_and_page_order(make_descriptor, page_widths):
    chunk = _chunk(
        make_descriptor("a.pdf", pages=1, width=101),
        make_descriptor("b.pdf", pages=2, width=102),
        make_descriptor("c.pdf", pages=1, width=103),
    )

    output = PDFChunkMerger().merge_chunk(chunk, "part_01.pdf")

    assert output.chunk_number == 1
    assert output.name == "part_01.pdf"
    assert output.page_count == 4
    assert output.byte_length == len(output.data)
    assert output.sources == ("a.pdf", "b.pdf", "c.pdf")
    assert page_widths(output.data) == [101, 102, 102, 103]


def test_corrupt_member_fails_whole_chunk_and_names_file(make_descriptor):
    chunk = _chunk(
        make_descriptor("good.pdf"),
        make_descriptor("broken.pdf", data=b"this is not a pdf at all"),
        number=3,
    )

    with pytest.raises(ParseError) as excinfo:
        PDFChunkMerger().merge_chunk(chunk, "part_03.pdf")

    assert excinfo.value.file == "broken.pdf"
    assert excinfo.value.chunk_number == 3
    assert "broken.pdf" in str(excinfo.value)
    assert "chunk 3" in str(excinfo.value)


def test_unreadable_source_raises_collection_error():
    def _missing():
        raise FileNotFoundError("gone")

    chunk = _chunk(FileDescriptor(name="gone.pdf", size_bytes=10, content_source=_missing))

    with pytest.raises(CollectionError, match="gone.pdf"):
        PDFChunkMerger().merge_chunk(chunk, "part_01.pdf")


def test_zero_page_document_is_merged_with_warning(make_descriptor, page_widths):
    empty = BytesIO()
    PdfWriter().write(empty)
    warnings = []
    chunk = _chunk(
        make_descriptor("empty.pdf", data=empty.getvalue()),
        make_descriptor("one.pdf", width=120),
    )

    output = PDFChunkMerger().merge_chunk(chunk, "part_01.pdf", warnings=warnings)

    assert page_widths(output.data) == [120]
    assert [warning["code"] for warning in warnings] == ["pdf_no_pages"]
    assert warnings[0]["file"] == "empty.pdf"


def test_view_only_encrypted_pdf_is_opened_with_empty_password(make_descriptor, page_widths):
    warnings = []
    chunk = _chunk(make_descriptor("locked.pdf", data=_encrypted_pdf("")))

    output = PDFChunkMerger().merge_chunk(chunk, "part_01.pdf", warnings=warnings)

    assert page_widths(output.data) == [150]
    assert warnings[0]["code"] == "pdf_decrypted_empty_password"


def test_password_protected_pdf_is_a_parse_error(make_descriptor):
    chunk = _chunk(make_descriptor("secret.pdf", data=_encrypted_pdf("secret")))

    with pytest.raises(ParseError, match="password-protected"):
        PDFChunkMerger().merge_chunk(chunk, "part_01.pdf")


def test_bookmarks_point_at_each_member_first_page(make_descriptor):
    chunk = _chunk(
        make_descriptor("intro.pdf", pages=2),
        make_descriptor("appendix.pdf", pages=1),
    )

    output = PDFChunkMerger(add_bookmarks=True).merge_chunk(chunk, "part_01.pdf")

    reader = PdfReader(BytesIO(output.data))
    titles = [item.title for item in reader.outline]
    pages = [reader.get_destination_page_number(item) for item in reader.outline]
    assert titles == ["intro", "appendix"]
    assert pages == [0, 2]


def test_cancellation_is_checked_before_each_member(make_descriptor):
    cancel_event = threading.Event()
    first_payload = make_descriptor("first.pdf").read_bytes()

    def _read_and_cancel():
        cancel_event.set()
        return first_payload

    chunk = _chunk(
        FileDescriptor(name="first.pdf", size_bytes=len(first_payload), content_source=_read_and_cancel),
        make_descriptor("second.pdf"),
    )

    with pytest.raises(RunCancelled):
        PDFChunkMerger().merge_chunk(chunk, "part_01.pdf", cancel_event=cancel_event)
