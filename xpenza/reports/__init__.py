"""Report generation."""

from xpenza.reports.csv_report import REPORT_COLUMNS, ReportDocument, generate_csv_report

__all__ = ["REPORT_COLUMNS", "ReportDocument", "generate_csv_report"]
