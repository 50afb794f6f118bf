from datetime import datetime

import pytest
from openpyxl import Workbook

from runlist.errors import EmptyFile, InvalidFileFormat
from runlist.parsing import _detect_encoding, open_runlist


def _write(tmp_path, name, text):
    path = tmp_path / name
    path.write_text(text, encoding="utf-8")
    return path


def test_csv_headers_verbatim_and_rows_as_text(tmp_path):
    path = _write(
        tmp_path,
        "runlist.csv",
        "VIN,Make,Model,Odometer,Lane #\n"
        "1HGCM82633A004352,Honda,Accord,\"42,000\",A\n"
        "\n"
        "4T1BF1FK5GU123456,Toyota,Camry,,007\n",
    )
    parsed = open_runlist(path)
    assert parsed.file_format == "csv"
    assert parsed.headers == ["VIN", "Make", "Model", "Odometer", "Lane #"]
    rows = list(parsed.rows)
    assert [r[1]["Make"] for r in rows] == ["Honda", "Toyota"]
    assert rows[0][1]["Odometer"] == "42,000"
    assert rows[1][1]["Odometer"] == ""
    assert rows[1][1]["Lane #"] == "007"


def test_csv_semicolon_delimiter_and_bom(tmp_path):
    path = tmp_path / "export.csv"
    path.write_bytes("\ufeffMake;Model;Year\nFord;F-150;2020\n".encode("utf-8"))
    parsed = open_runlist(path)
    assert parsed.headers == ["Make", "Model", "Year"]
    assert list(parsed.rows) == [(1, {"Make": "Ford", "Model": "F-150", "Year": "2020"})]


def test_csv_windows_1252_export(tmp_path):
    path = tmp_path / "legacy.csv"
    path.write_bytes(
        "Make,Model,Color,Announcements\n"
        "Renault,Clio,Café au lait,Crème interior - pare-brise fissuré\n"
        "Peugeot,208,Bleu Récif,Rétroviseur à remplacer\n".encode("cp1252")
    )
    parsed = open_runlist(path)
    rows = list(parsed.rows)
    assert [r[1]["Make"] for r in rows] == ["Renault", "Peugeot"]
    assert rows[0][1]["Color"] == "Café au lait"
    assert rows[1][1]["Announcements"] == "Rétroviseur à remplacer"


def test_utf8_sample_cut_mid_character_stays_utf8():
    sample = "Make,Model\nCitroën,C3\n".encode("utf-8")
    assert _detect_encoding(sample[: sample.index(b"\xc3") + 1]) == "utf-8-sig"


def test_csv_streams_across_chunks(tmp_path):
    lines = ["Make,Model"] + [f"Make{i},Model{i}" for i in range(25)]
    path = _write(tmp_path, "big.csv", "\n".join(lines) + "\n")
    parsed = open_runlist(path, chunk_size=4)
    rows = list(parsed.rows)
    assert len(rows) == 25
    assert rows[-1] == (25, {"Make": "Make24", "Model": "Model24"})


def test_header_only_csv_has_no_rows(tmp_path):
    parsed = open_runlist(_write(tmp_path, "empty.csv", "Make,Model\n"))
    assert parsed.headers == ["Make", "Model"]
    assert next(parsed.rows, None) is None


def test_zero_byte_file_is_empty(tmp_path):
    with pytest.raises(EmptyFile):
        open_runlist(_write(tmp_path, "nothing.csv", ""))


def test_binary_file_is_invalid(tmp_path):
    path = tmp_path / "photo.csv"
    path.write_bytes(b"\x89PNG\r\n\x1a\n\x00\x00\x00\rIHDR")
    with pytest.raises(InvalidFileFormat):
        open_runlist(path)


def test_legacy_xls_is_invalid(tmp_path):
    path = tmp_path / "old.xls"
    path.write_bytes(b"\xd0\xcf\x11\xe0\xa1\xb1\x1a\xe1" + b"\x00" * 64)
    with pytest.raises(InvalidFileFormat):
        open_runlist(path)


def test_corrupt_xlsx_is_invalid(tmp_path):
    path = tmp_path / "broken.xlsx"
    path.write_bytes(b"PK\x03\x04 not really a zip")
    with pytest.raises(InvalidFileFormat):
        open_runlist(path)


def test_xlsx_rows_are_stringified(tmp_path):
    wb = Workbook()
    ws = wb.active
    ws.append([None, None, None])
    ws.append(["VIN", "Make", "Model", "Year", "Miles", "Sale Date"])
    ws.append(["1FTFW1E50JFA12345", "Ford", "F-150", 2018, 61000.0, datetime(2024, 3, 1)])
    ws.append([None, None, None, None, None, None])
    ws.append(["2T1BURHE0JC012345", "Toyota", "Corolla"])
    path = tmp_path / "runlist.xlsx"
    wb.save(path)

    parsed = open_runlist(path)
    assert parsed.file_format == "xlsx"
    assert parsed.headers == ["VIN", "Make", "Model", "Year", "Miles", "Sale Date"]
    rows = list(parsed.rows)
    assert len(rows) == 2
    first = rows[0][1]
    assert first["Year"] == "2018"
    assert first["Miles"] == "61000"
    assert first["Sale Date"].startswith("2024-03-01")
    assert rows[1][1]["Year"] == ""


def test_xlsx_close_before_reading(tmp_path):
    wb = Workbook()
    wb.active.append(["Make", "Model"])
    wb.active.append(["Kia", "Soul"])
    path = tmp_path / "small.xlsx"
    wb.save(path)
    parsed = open_runlist(path)
    parsed.close()
