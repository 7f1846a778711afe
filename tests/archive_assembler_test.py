from io import BytesIO
import zipfile

import pytest

from chunk_merger_engine import ArchiveAssembler, MergedOutput, SerializationError


def _output(number, payload=b"%PDF-1.4 fake", name=None):
    return MergedOutput(chunk_number=number, name=name or f"part_{number}.pdf", data=payload)


@pytest.mark.parametrize(
    "number, total, expected",
    [
        (1, 3, "merged_pdf_part_01.pdf"),
        (9, 9, "merged_pdf_part_09.pdf"),
        (7, 120, "merged_pdf_part_007.pdf"),
        (120, 120, "merged_pdf_part_120.pdf"),
    ],
)
def test_output_names_are_zero_padded(number, total, expected):
    assert ArchiveAssembler().output_name(number, total) == expected


def test_output_names_list_in_chunk_order():
    assembler = ArchiveAssembler(name_prefix="bundle")
    names = [assembler.output_name(number, 12) for number in range(1, 13)]

    assert sorted(names) == names
    assert len(set(names)) == 12


def test_archive_contains_outputs_in_chunk_order():
    assembler = ArchiveAssembler()
    assembler.add(_output(1, b"first"))
    assembler.add(_output(2, b"second"))

    data = assembler.build()

    with zipfile.ZipFile(BytesIO(data)) as archive:
        assert archive.namelist() == ["part_1.pdf", "part_2.pdf"]
        assert archive.read("part_2.pdf") == b"second"
        assert all(info.compress_type == zipfile.ZIP_DEFLATED for info in archive.infolist())
    assert assembler.entries == [("part_1.pdf", 5), ("part_2.pdf", 6)]


def test_empty_archive_is_valid():
    data = ArchiveAssembler().build()

    with zipfile.ZipFile(BytesIO(data)) as archive:
        assert archive.namelist() == []


def test_out_of_order_output_is_rejected():
    assembler = ArchiveAssembler()
    assembler.add(_output(2))

    with pytest.raises(ValueError, match="chunk order"):
        assembler.add(_output(1))


def test_add_after_build_is_rejected():
    assembler = ArchiveAssembler()
    first = assembler.build()

    with pytest.raises(SerializationError):
        assembler.add(_output(1))
    assert assembler.build() == first


def test_save_writes_archive(tmp_path):
    assembler = ArchiveAssembler()
    assembler.add(_output(1))

    target = assembler.save(str(tmp_path / "bundle.zip"))

    with zipfile.ZipFile(target) as archive:
        assert archive.namelist() == ["part_1.pdf"]


def test_save_to_missing_folder_raises_serialization_error(tmp_path):
    with pytest.raises(SerializationError):
        ArchiveAssembler().save(str(tmp_path / "missing" / "bundle.zip"))


def test_failed_save_keeps_previous_file_and_leaves_no_partial(tmp_path, monkeypatch):
    target = tmp_path / "bundle.zip"
    target.write_bytes(b"previous")
    assembler = ArchiveAssembler()
    assembler.add(_output(1))

    def _fail_replace(src, dst):
        raise OSError("disk full")

    monkeypatch.setattr("chunk_merger_engine.os.replace", _fail_replace)

    with pytest.raises(SerializationError, match="disk full"):
        assembler.save(str(target))

    assert target.read_bytes() == b"previous"
    assert [path.name for path in tmp_path.iterdir()] == ["bundle.zip"]


def test_save_leaves_only_the_archive(tmp_path):
    assembler = ArchiveAssembler()
    assembler.add(_output(1))

    assembler.save(str(tmp_path / "bundle.zip"))

    assert [path.name for path in tmp_path.iterdir()] == ["bundle.zip"]
