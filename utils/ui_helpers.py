import os
import json
from typing import Any, Dict, List, Sequence, Tuple
from rich.console import Console
from rich.table import Table
from rich.panel import Panel

# Environment variable to control CLI output mode
# Allowed values: 'plain' (default), 'json', 'rich'
OUTPUT_MODE_ENV = "LIB_CLI_OUTPUT"

_console = Console()

# (header, attribute) pairs shown for each record type
BOOK_COLUMNS: List[Tuple[str, str]] = [
    ("ID", "book_id"), ("ISBN", "isbn"), ("Title", "title"), ("Author", "author"),
    ("Available", "available_copies"), ("Total", "total_copies"),
]
COPY_COLUMNS: List[Tuple[str, str]] = [
    ("ID", "copy_id"), ("Barcode", "barcode"), ("Status", "status"), ("Condition", "condition"),
]
LOAN_COLUMNS: List[Tuple[str, str]] = [
    ("ID", "loan_id"), ("Member", "member_id"), ("Copy", "copy_id"), ("Due", "due_date"),
    ("Status", "status"), ("Renewals", "renewal_count"), ("Fine", "fine_amount"),
]
RESERVATION_COLUMNS: List[Tuple[str, str]] = [
    ("ID", "reservation_id"), ("Member", "member_id"), ("Book", "book_id"), ("Position", "queue_position"),
    ("Status", "status"), ("Copy", "assigned_copy_id"), ("Pickup by", "expiry_date"),
]


def set_output_mode(mode: str) -> None:
    mode = (mode or "").lower().strip()
    if mode in {"plain", "json", "rich"}:
        os.environ[OUTPUT_MODE_ENV] = mode
    # anything else keeps the current mode


def get_output_mode() -> str:
    return os.environ.get(OUTPUT_MODE_ENV, "plain").lower()


def _cell(record: Any, attr: str) -> str:
    value = record.to_dict().get(attr) if hasattr(record, "to_dict") else getattr(record, attr, "")
    if value is None:
        return "-"
    if attr.endswith("_date") and isinstance(value, str):
        return value[:10]
    return str(value)


def print_records(records: Sequence[Any], columns: List[Tuple[str, str]], title: str,
                  empty_message: str) -> None:
    """Print a list of records according to the current output mode.
    - plain: one ' | '-separated line per record, or ``empty_message``
    - json: JSON array of ``to_dict()`` payloads
    - rich: Rich table
    """
    mode = get_output_mode()

    if not records:
        if mode == "json":
            print("[]")
        else:
            print(empty_message)
        return

    if mode == "json":
        print(json.dumps([r.to_dict() for r in records], ensure_ascii=False))
    elif mode == "rich":
        table = Table(title=title, show_lines=True, header_style="bold cyan")
        for header, _ in columns:
            table.add_column(header, style="white")
        for r in records:
            table.add_row(*(_cell(r, attr) for _, attr in columns))
        _console.print(table)
    else:
        for r in records:
            print(" | ".join(f"{header}: {_cell(r, attr)}" for header, attr in columns))


def print_record(record: Any, message: str) -> None:
    """Print the outcome of a single mutating command."""
    mode = get_output_mode()
    if mode == "json":
        print(json.dumps({"success": True, "value": record.to_dict()}, ensure_ascii=False))
    elif mode == "rich":
        body = "\n".join(f"[bold]{k}:[/] {v}" for k, v in record.to_dict().items())
        _console.print(Panel.fit(body, title=message, border_style="green"))
    else:
        print(message)


def print_error(kind: str, message: str) -> None:
    mode = get_output_mode()
    if mode == "json":
        print(json.dumps({"success": False, "error_kind": kind, "detail": message}, ensure_ascii=False))
    elif mode == "rich":
        _console.print(f"[bold red]Error ({kind}):[/] {message}")
    else:
        print(f"Error ({kind}): {message}")


def print_stats_result(stats: Dict[str, Any]) -> None:
    """Print statistics according to the current output mode.
    - plain: one 'Label: value' line per metric
    - json: JSON object
    - rich: Panel with the metrics
    """
    mode = get_output_mode()

    if not stats:
        print("No statistics available.")
        return

    labels = {key: key.replace("_", " ").title() if "_" in key else key for key in stats}

    if mode == "json":
        print(json.dumps(stats, ensure_ascii=False))
    elif mode == "rich":
        content = "\n".join(f"[bold]{labels[k]}:[/] {v}" for k, v in stats.items())
        _console.print(Panel.fit(content, title="📊 Stats", border_style="blue"))
    else:
        for key, value in stats.items():
            print(f"{labels[key]}: {value}")
