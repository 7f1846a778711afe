from io import BytesIO
from pathlib import Path
import zipfile

import pytest
from pypdf import PdfReader, PdfWriter

from chunk_merger_engine import FileDescriptor


def build_pdf_bytes(pages: int = 1, width: int = 72) -> bytes:
    """Blank PDF whose page width tags where its pages came from."""
    writer = PdfWriter()
    for _ in range(pages):
        writer.add_blank_page(width=width, height=72)
    buffer = BytesIO()
    writer.write(buffer)
    return buffer.getvalue()


@pytest.fixture
def pdf_bytes():
    return build_pdf_bytes


@pytest.fixture
def make_pdf(tmp_path: Path):
    def _make(relative_name: str, pages: int = 1, width: int = 72) -> Path:
        path = tmp_path / relative_name
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(build_pdf_bytes(pages=pages, width=width))
        return path

    return _make


@pytest.fixture
def make_descriptor():
    def _make(name: str, size_bytes: int = None, pages: int = 1, width: int = 72, data: bytes = None) -> FileDescriptor:
        payload = data if data is not None else build_pdf_bytes(pages=pages, width=width)
        size = len(payload) if size_bytes is None else size_bytes
        return FileDescriptor(name=name, size_bytes=size, content_source=lambda: payload, source=name)

    return _make


@pytest.fixture
def sized():
    """Descriptors with declared sizes only; reading them is never expected."""

    def _make(sizes, prefix: str = "file"):
        def _unreadable():
            raise AssertionError("planning must not read file content")

        return [
            FileDescriptor(name=f"{prefix}{index}.pdf", size_bytes=size, content_source=_unreadable)
            for index, size in enumerate(sizes, start=1)
        ]

    return _make


@pytest.fixture
def write_zip(tmp_path: Path):
    def _write(relative_name: str, entries) -> Path:
        zip_path = tmp_path / relative_name
        zip_path.parent.mkdir(parents=True, exist_ok=True)
        with zipfile.ZipFile(zip_path, "w", compression=zipfile.ZIP_DEFLATED) as archive:
            for name, payload in entries:
                archive.writestr(name, payload)
        return zip_path

    return _write


@pytest.fixture
def page_widths():
    def _widths(data: bytes):
        return [round(float(page.mediabox.width)) for page in PdfReader(BytesIO(data)).pages]

    return _widths
