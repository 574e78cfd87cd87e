"""Tests for CSV export."""
import csv
import io
from datetime import datetime

from civic_console.exports import CSV_HEADERS, export_filename, report_row, reports_to_csv
from civic_console.timestamps import format_local

from conftest import T0, hours, make_report, resolved_report


def parse(text):
    return list(csv.reader(io.StringIO(text)))


class TestReportsToCsv:
    def test_header_only_for_empty_input(self):
        rows = parse(reports_to_csv([]))
        assert rows == [CSV_HEADERS]
        assert len(CSV_HEADERS) == 16

    def test_one_row_per_report(self):
        reports = [make_report(), make_report(), resolved_report(T0, T0 + hours(3))]
        rows = parse(reports_to_csv(reports))
        assert len(rows) == 4
        assert all(len(row) == 16 for row in rows)
        assert [row[0] for row in rows[1:]] == [r.id for r in reports]

    def test_awkward_text_survives_quoting(self):
        description = 'He said "fix it", then left\nSecond line'
        report = make_report(description=description)
        text = reports_to_csv([report])

        assert '"He said ""fix it"", then left\nSecond line"' in text
        assert parse(text)[1][3] == description


class TestReportRow:
    def test_open_report_has_blank_resolution_time(self):
        assert report_row(make_report())[-1] == ""

    def test_resolved_report_rounds_hours(self):
        row = report_row(resolved_report(T0, T0 + hours(2.5)))
        assert row[-1] == "3"

    def test_resolved_without_history_is_blank(self):
        assert report_row(make_report(status="resolved"))[-1] == ""

    def test_media_and_location_columns(self):
        report = make_report(imageUrl="https://img", location={"latitude": 28.6, "longitude": 77.2})
        row = dict(zip(CSV_HEADERS, report_row(report)))
        assert row["Has Image"] == "Yes"
        assert row["Has Audio"] == "No"
        assert (row["Latitude"], row["Longitude"]) == ("28.6", "77.2")

    def test_missing_optionals_are_empty(self):
        row = dict(zip(CSV_HEADERS, report_row(make_report(createdAt=None))))
        assert row["Classification"] == ""
        assert row["Assigned Department"] == ""
        assert row["Latitude"] == ""
        assert row["Created At"] == ""

    def test_timestamps_in_local_time(self):
        row = dict(zip(CSV_HEADERS, report_row(make_report())))
        assert row["Created At"] == format_local(T0)
        assert row["Created At"] == T0.astimezone().strftime("%Y-%m-%d %H:%M:%S")


def test_export_filename():
    assert export_filename(when=datetime(2025, 3, 9)) == "reports-export-2025-03-09.csv"
    assert export_filename("analytics", datetime(2025, 12, 1)) == "analytics-2025-12-01.csv"
