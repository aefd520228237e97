from rich.console import Console
from rich.table import Table

from quickdrop_client.models.drop import SweepReport


def get_rich_console() -> Console: return Console(stderr=True)


def sweep_report_table(report: SweepReport, show_tokens: bool = False) -> Table:
    table = Table(title="Reaper sweep")
    table.add_column("Examined", justify="right")
    table.add_column("Reclaimed", justify="right", style="green")
    table.add_column("Failed", justify="right", style="red")
    table.add_row(str(report.examined), str(report.reclaimed), str(report.failed))
    if show_tokens and report.tokens:
        table.caption = ", ".join(f"{t[:6]}..." for t in report.tokens)
    return table
