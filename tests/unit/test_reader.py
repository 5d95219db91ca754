"""Unit tests for call_records_etl.reader."""

from __future__ import annotations

import pytest

from call_records_etl.config import ColumnMap
from call_records_etl.reader import CsvStreamReader, MissingHeadersError

HEADER = "callNumber,callDateTime,priority,district,description,incidentLocation,location\n"


def _write(tmp_path, body: str, header: str = HEADER, encoding: str = "utf-8"):
    path = tmp_path / "calls.csv"
    path.write_text(header + body, encoding=encoding)
    return path


def _rows(n: int) -> str:
    return "".join(f"C{i},2026-01-0{i} 00:00:00,Low,ND,D{i},A{i},\n" for i in range(1, n + 1))


class TestOpen:
    def test_counts_data_rows(self, tmp_path):
        reader = CsvStreamReader(ColumnMap().required())
        assert reader.open(_write(tmp_path, _rows(4))) == 4
        assert reader.total_rows == 4

    def test_header_only(self, tmp_path):
        assert CsvStreamReader().open(_write(tmp_path, "")) == 0

    def test_missing_headers(self, tmp_path):
        path = _write(tmp_path, "", header="callNumber,priority\n")
        with pytest.raises(MissingHeadersError, match="callDateTime"):
            CsvStreamReader(ColumnMap().required()).open(path)

    def test_bom_and_padded_headers_accepted(self, tmp_path):
        header = "\ufeff callNumber ,callDateTime,priority,district,description,incidentLocation,location\n"
        path = _write(tmp_path, _rows(1), header=header)
        reader = CsvStreamReader(ColumnMap().required())
        assert reader.open(path) == 1
        (_, row), = list(reader.rows_from(0))
        assert row["callNumber"] == "C1"

    def test_rows_from_before_open(self):
        with pytest.raises(RuntimeError):
            list(CsvStreamReader().rows_from(0))


class TestRowsFrom:
    def test_indices_are_one_based(self, tmp_path):
        reader = CsvStreamReader()
        reader.open(_write(tmp_path, _rows(3)))
        assert [idx for idx, _ in reader.rows_from(0)] == [1, 2, 3]

    def test_offset_skips_processed_rows(self, tmp_path):
        reader = CsvStreamReader()
        reader.open(_write(tmp_path, _rows(4)))
        rows = list(reader.rows_from(2))
        assert [idx for idx, _ in rows] == [3, 4]
        assert rows[0][1]["callNumber"] == "C3"

    def test_offset_past_end_is_empty(self, tmp_path):
        reader = CsvStreamReader()
        reader.open(_write(tmp_path, _rows(2)))
        assert list(reader.rows_from(5)) == []

    def test_negative_offset_treated_as_zero(self, tmp_path):
        reader = CsvStreamReader()
        reader.open(_write(tmp_path, _rows(2)))
        assert len(list(reader.rows_from(-1))) == 2

    def test_empty_cells_are_none(self, tmp_path):
        reader = CsvStreamReader()
        reader.open(_write(tmp_path, ",,,,,,\n"))
        (_, row), = list(reader.rows_from(0))
        assert set(row.values()) == {None}

    def test_quoted_location_kept_whole(self, tmp_path):
        body = 'C1,2026-01-01 00:00:00,Low,ND,D,A,"A (39.29, -76.61)"\n'
        reader = CsvStreamReader()
        reader.open(_write(tmp_path, body))
        (_, row), = list(reader.rows_from(0))
        assert row["location"] == "A (39.29, -76.61)"

    def test_restartable_with_new_offset(self, tmp_path):
        reader = CsvStreamReader()
        reader.open(_write(tmp_path, _rows(3)))
        first = reader.rows_from(0)
        next(first)
        assert [idx for idx, _ in reader.rows_from(1)] == [2, 3]
