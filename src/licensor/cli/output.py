"""Output formatting for the licensor CLI.

Provides both JSON (machine-parseable) and human-readable (Rich) output.
All public functions accept a ``json_mode`` flag:
    - ``True``  -> ``{status, data, error}`` JSON envelope
    - ``False`` -> Rich-formatted text for humans
"""

from __future__ import annotations

import json
from io import StringIO
from typing import Any, Dict, List, Optional

from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

_STATUS_STYLES = {
    "active": "green",
    "grace_period": "yellow",
    "expired": "red",
    "not_yet_valid": "yellow",
    "invalid": "red",
    "corrupted": "red",
    "not_found": "red",
    "service_unavailable": "red",
}


def _render(renderable: Any) -> str:
    """Render a Rich object to a string."""
    buf = StringIO()
    console = Console(file=buf, force_terminal=False, width=100)
    console.print(renderable)
    return buf.getvalue().rstrip("\n")


# ---------------------------------------------------------------------------
# Envelope
# ---------------------------------------------------------------------------


def format_response(
    status: str,
    data: Optional[Dict[str, Any]] = None,
    error: Optional[Dict[str, Any]] = None,
    *,
    json_mode: bool = False,
) -> str:
    """Build a standard ``{status, data, error}`` response."""
    if json_mode:
        envelope: Dict[str, Any] = {"status": status}
        if data is not None:
            envelope["data"] = data
        if error is not None:
            envelope["error"] = error
        return json.dumps(envelope, indent=2, sort_keys=False)

    if status == "error" and error:
        code = error.get("code", "UNKNOWN")
        msg = error.get("message", "An unknown error occurred.")
        t = Text()
        t.append("Error", style="bold red")
        t.append(f" [{code}]: ", style="red")
        t.append(msg)
        return _render(Panel(t, title="Error", border_style="red"))

    if data:
        table = Table(show_header=False, box=None)
        table.add_column(style="bold")
        table.add_column()
        for key, value in data.items():
            table.add_row(str(key), _cell(value))
        return _render(Panel(table, border_style="green"))
    return _render(Text(status, style="green"))


def format_error(
    message: str,
    code: str = "ERROR",
    *,
    json_mode: bool = False,
) -> str:
    """Shortcut for a standard error response."""
    return format_response(
        "error",
        error={"code": code, "message": message},
        json_mode=json_mode,
    )


def _cell(value: Any) -> str:
    if value is None:
        return "-"
    if isinstance(value, (list, tuple)):
        return ", ".join(str(v) for v in value) or "-"
    if isinstance(value, dict):
        return ", ".join(f"{k}={v}" for k, v in value.items()) or "-"
    return str(value)


# ---------------------------------------------------------------------------
# Domain views
# ---------------------------------------------------------------------------


def format_validation_result(result: Dict[str, Any], *, json_mode: bool = False) -> str:
    """Format ``LicenseValidationResult.to_dict()`` output."""
    status = "success" if result.get("is_valid") else "error"
    if json_mode:
        error = None
        if status == "error":
            error = {
                "code": str(result.get("status", "invalid")).upper(),
                "message": "; ".join(result.get("validation_messages", [])) or "License is not valid",
            }
        return format_response(status, data=result, error=error, json_mode=True)

    license_info = result.get("license") or {}
    style = _STATUS_STYLES.get(result.get("status", ""), "white")
    table = Table(show_header=False, box=None)
    table.add_column(style="bold")
    table.add_column()
    table.add_row("Status", Text(str(result.get("status")), style=style))
    table.add_row("License", _cell(license_info.get("licenseId")))
    table.add_row("Product", _cell(license_info.get("productId")))
    table.add_row("Consumer", _cell(license_info.get("consumerId")))
    table.add_row("Valid", f"{_cell(license_info.get('validFrom'))} .. {_cell(license_info.get('validTo'))}")
    table.add_row("Signature", "ok" if result.get("is_signature_valid") else "not verified")
    if result.get("is_grace_period"):
        table.add_row("Grace until", _cell(result.get("grace_period_expiry")))
    table.add_row("Features", _cell(result.get("available_features")))
    for message in result.get("validation_messages", []):
        table.add_row("Note", message)
    return _render(Panel(table, title="License validation", border_style=style))


def format_license_entity(entity: Dict[str, Any], *, json_mode: bool = False) -> str:
    """Format ``ProductLicense.to_dict()`` output."""
    if json_mode:
        return format_response("success", data=entity, json_mode=True)
    table = Table(show_header=False, box=None)
    table.add_column(style="bold")
    table.add_column()
    for key in ("license_id", "license_model", "product_id", "consumer_id",
                "license_key", "valid_from", "valid_to", "max_allowed_users", "status"):
        table.add_row(key, _cell(entity.get(key)))
    return _render(Panel(table, title="License issued", border_style="green"))


def format_audit_rows(rows: List[Dict[str, Any]], *, json_mode: bool = False) -> str:
    """Format rows from ``LicensorDB.query_audit``."""
    if json_mode:
        return format_response("success", data={"entries": rows, "count": len(rows)}, json_mode=True)
    if not rows:
        return _render(Text("No audit entries.", style="dim"))
    table = Table(title="Audit log")
    for column in ("timestamp", "operation", "license_id", "product_id", "performed_by", "description"):
        table.add_column(column)
    for row in rows:
        table.add_row(*(_cell(row.get(c)) for c in
                        ("timestamp", "operation", "license_id", "product_id", "performed_by", "description")))
    return _render(table)
