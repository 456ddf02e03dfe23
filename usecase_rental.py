"""Replay a business day against the rental backend over HTTP.

Usage examples:

- Default (uses the built-in day below):
    `python usecase_rental.py`

- Provide a JSON/YAML scenario:
    `python usecase_rental.py --config ./my_day.yaml`

- Preview without sending requests:
    `python usecase_rental.py --dry-run`

The scenario file may define `baseUrl`, `date`, `pricing`, `vehicles` and
`timeline`. The backend clock is frozen at every timeline entry through the
debug API, so the replay is deterministic.
"""
from __future__ import annotations

import argparse
import json
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

import requests
import yaml
from openpyxl import Workbook
from openpyxl.styles import Alignment, Font, PatternFill
from openpyxl.utils import get_column_letter
from rich import box
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

BASE_URL = "http://localhost:8000"
SESSION = requests.Session()
DRY_RUN = False
CONSOLE = Console()
SNAPSHOT_ROWS: List[Dict[str, Any]] = []
RENTAL_ROWS: Dict[str, Dict[str, Any]] = {}
# scenario alias -> backend rental id
RENTAL_IDS: Dict[str, str] = {}

BUSINESS_DATE = "2026-03-10"
TIMEZONE_SUFFIX = "+05:30"

# ---------------------------------------------------------------------------
# 1) Rate schedule applied before the replay. None falls back to the server value.
PRICING_OVERRIDES: Dict[str, Any] = {
    "hourlyRate": 80,
    "graceMinutes": 15,
    "blockMinutes": 30,
    "nightChargeTime": "22:30",
    "nightMultiplier": 2,
}

# ---------------------------------------------------------------------------
# 2) Fleet registered through /debug/vehicles.
VEHICLE_PRESETS: List[Dict[str, Any]] = [
    {"vehicleRef": "V1", "model": "Activa 6G", "plateNumber": "KA-01-HX-1001"},
    {"vehicleRef": "V2", "model": "Jupiter", "plateNumber": "KA-01-HX-1002"},
    {"vehicleRef": "V3", "model": "Access 125", "plateNumber": "KA-01-HX-1003"},
    {"vehicleRef": "V4", "model": "Ntorq", "plateNumber": "KA-01-HX-1004"},
]

# ---------------------------------------------------------------------------
# 3) Timeline keyed by local time "HH:MM". Action types:
#      - start_day / end_day / restart_day -> /daily-operations/...
#      - start      -> POST /rentals                      (rental alias + vehicle + customer)
#      - complete   -> POST /rentals/{id}/complete
#      - cancel     -> POST /rentals/{id}/cancel
#      - change_vehicle -> POST /rentals/{id}/change-vehicle
#      - reprice    -> POST /admin/reprice (dry run unless payload says otherwise)
TIMELINE: Dict[str, List[Dict[str, Any]]] = {
    "09:00": [{"type": "start_day", "payload": {"staffName": "Asha", "notes": "Opening"}}],
    "10:00": [{"type": "start", "rental": "r1", "payload": {"vehicleRef": "V1", "customerRef": "C1"}}],
    "10:30": [{"type": "start", "rental": "r2", "payload": {"vehicleRef": "V2", "customerRef": "C2"}}],
    "10:40": [{"type": "change_vehicle", "rental": "r2", "payload": {"newVehicleRef": "V4"}}],
    "11:00": [{"type": "start", "rental": "r3", "payload": {"vehicleRef": "V3", "customerRef": "C1"}}],
    "11:45": [{"type": "complete", "rental": "r1", "payload": {"paymentMethod": "upi"}}],
    "12:00": [{"type": "cancel", "rental": "r2", "payload": {"reason": "customer_changed_mind"}}],
    "21:30": [{"type": "start", "rental": "r4", "payload": {"vehicleRef": "V2", "customerRef": "C4"}}],
    "23:00": [
        {"type": "complete", "rental": "r3", "payload": {"paymentMethod": "cash", "discountAmount": 20}},
        {"type": "complete", "rental": "r4", "payload": {"paymentMethod": "cash"}},
    ],
    "23:10": [{"type": "end_day", "payload": {"staffName": "Asha", "notes": "Closing"}}],
    "23:15": [{"type": "reprice", "payload": {"schedule": {"hourlyRate": 100}}}],
}


def load_config(path: Optional[str]) -> None:
    """Load an external scenario overriding baseUrl, date, pricing, vehicles and timeline.

    Supported formats: JSON (.json) and YAML (.yml/.yaml).
    Structure:
    {
      "baseUrl": "http://localhost:8000",
      "date": "2026-03-10",
      "pricing": {"hourlyRate": 90},
      "vehicles": [{"vehicleRef": "V1", "model": "Activa"}],
      "timeline": {"10:00": [{"type": "start", "rental": "r1", "payload": {"vehicleRef": "V1", "customerRef": "C1"}}]}
    }
    """
    global BASE_URL, BUSINESS_DATE, PRICING_OVERRIDES, VEHICLE_PRESETS, TIMELINE
    if not path:
        return

    file = Path(path)
    if not file.exists():
        raise FileNotFoundError(f"Config file not found: {path}")

    def _coerce_timeline_keys(d: Dict[Any, Any]) -> Dict[str, List[Dict[str, Any]]]:
        result: Dict[str, List[Dict[str, Any]]] = {}
        for k, v in d.items():
            key = str(k)
            hours, _, minutes = key.partition(":")
            if not (hours.isdigit() and minutes.isdigit()):
                raise ValueError(f"Timeline keys must be HH:MM: got {k}")
            if not isinstance(v, list):
                raise ValueError(f"Timeline entry {key} must be a list of actions")
            result[f"{int(hours):02d}:{int(minutes):02d}"] = v
        return result

    if file.suffix.lower() in (".yml", ".yaml"):
        content = yaml.safe_load(file.read_text(encoding="utf-8")) or {}
    else:
        content = json.loads(file.read_text(encoding="utf-8")) or {}

    if isinstance(content.get("baseUrl"), str):
        BASE_URL = content["baseUrl"].rstrip("/")
    if content.get("date"):
        BUSINESS_DATE = str(content["date"])
    if isinstance(content.get("pricing"), dict):
        PRICING_OVERRIDES = {**PRICING_OVERRIDES, **content["pricing"]}
    if isinstance(content.get("vehicles"), list):
        VEHICLE_PRESETS = content["vehicles"]
    if isinstance(content.get("timeline"), dict):
        TIMELINE = _coerce_timeline_keys(content["timeline"])


def main() -> None:
    args = parse_args()
    load_config(args.config)
    global DRY_RUN, BUSINESS_DATE
    DRY_RUN = bool(args.dry_run)
    if args.base_url:
        update_base_url(args.base_url)
    if args.date:
        BUSINESS_DATE = args.date

    configure_pricing()
    seed_vehicles(VEHICLE_PRESETS)
    replay_timeline(max_entries=args.max_entries)
    release_clock()
    export_excel_report(SNAPSHOT_ROWS, list(RENTAL_ROWS.values()), filename=args.output)


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Replay a rental business day over the HTTP API")
    parser.add_argument("--config", type=str, default=None, help="Path to JSON/YAML scenario")
    parser.add_argument("--dry-run", action="store_true", help="Print requests without sending")
    parser.add_argument("--base-url", type=str, default=None, help="Override backend base URL (e.g. http://localhost:8000)")
    parser.add_argument("--date", type=str, default=None, help="Business date to replay (YYYY-MM-DD)")
    parser.add_argument("--max-entries", type=int, default=None, help="Stop after N timeline entries")
    parser.add_argument("--output", type=str, default="rental_day_report.xlsx", help="Excel report path")
    return parser.parse_args()


def update_base_url(url: str) -> None:
    global BASE_URL
    BASE_URL = url.rstrip("/")


def local_iso(hhmm: str) -> str:
    return f"{BUSINESS_DATE}T{hhmm}:00{TIMEZONE_SUFFIX}"

# --- HTTP helpers ---------------------------------------------------------

def call(method: str, path: str, payload: Optional[Dict[str, Any]] = None) -> Optional[Dict[str, Any]]:
    """Send one request; rejections are printed and the replay goes on."""
    if DRY_RUN:
        body = f"\n{json.dumps(payload, ensure_ascii=False)}" if payload else ""
        CONSOLE.print(Panel.fit(f"[DRY] {method} {BASE_URL}{path}{body}", title="Dry Run", border_style="magenta"))
        return None
    try:
        resp = SESSION.request(method, f"{BASE_URL}{path}", json=payload, timeout=10)
        resp.raise_for_status()
        return resp.json()
    except requests.HTTPError as exc:
        detail, reason = str(exc), ""
        if exc.response is not None:
            try:
                body = exc.response.json()
                detail = body.get("detail", detail)
                reason = body.get("reason", "")
            except ValueError:
                detail = exc.response.text or detail
        CONSOLE.print(
            Panel(
                f"[red]{method} {path} FAILED[/]\n[yellow]{reason or 'error'}: {detail}[/]",
                title="Request Rejected",
                border_style="red",
            )
        )
    except requests.RequestException as exc:
        CONSOLE.print(Panel(f"[red]{method} {path} FAILED[/]\n[yellow]{exc}[/]", title="Network Error", border_style="red"))
    return None


def configure_pricing() -> None:
    payload = {key: value for key, value in PRICING_OVERRIDES.items() if value is not None}
    table = Table(title="Applying Rate Schedule", box=box.SIMPLE, show_header=False)
    for key, value in payload.items():
        table.add_row(f"[bold cyan]{key}[/]", str(value))
    CONSOLE.print(table)
    applied = call("PUT", "/settings/pricing", payload)
    if applied:
        CONSOLE.print(f"[green]✔ Rate schedule applied (half rate {applied.get('halfRate')})[/]")


def seed_vehicles(presets: Iterable[Dict[str, Any]]) -> None:
    vehicles = list(presets)
    result = call("POST", "/debug/vehicles", {"vehicles": vehicles})
    if result or DRY_RUN:
        CONSOLE.print(f"[green]✔ Registered {len(vehicles)} vehicles[/]")


def freeze_clock(hhmm: str) -> None:
    call("POST", "/debug/clock", {"freezeAt": local_iso(hhmm)})


def release_clock() -> None:
    call("POST", "/debug/clock", {"reset": True})

# --- Timeline execution ---------------------------------------------------

def replay_timeline(max_entries: Optional[int] = None) -> None:
    entries = sorted(TIMELINE.items())
    if max_entries is not None:
        entries = entries[:max_entries]
    CONSOLE.print(
        Panel.fit(
            f"date={BUSINESS_DATE}\nentries={len(entries)}\nDRY_RUN={DRY_RUN}",
            title="Starting Timeline",
            border_style="cyan",
        )
    )

    for hhmm, actions in entries:
        freeze_clock(hhmm)
        CONSOLE.print(Panel.fit(f"{BUSINESS_DATE} {hhmm}", border_style="blue"))
        for action in actions:
            send_action(hhmm, action)
        snapshot_ledger(hhmm)

    CONSOLE.print("[green]✔ Timeline replay finished[/]")


def send_action(hhmm: str, action: Dict[str, Any]) -> None:
    action_type = action["type"]
    payload = dict(action.get("payload") or {})
    alias = action.get("rental")

    if action_type in ("start_day", "end_day", "restart_day"):
        payload.setdefault("date", BUSINESS_DATE)
        path = {
            "start_day": "/daily-operations/start",
            "end_day": "/daily-operations/end",
            "restart_day": "/daily-operations/restart",
        }[action_type]
        body = call("POST", path, payload)
        if body:
            show_ledger(f"{action_type.upper()} @ {hhmm}", body)
        return

    if action_type == "reprice":
        payload.setdefault("dateFrom", BUSINESS_DATE)
        payload.setdefault("dateTo", BUSINESS_DATE)
        body = call("POST", "/admin/reprice", payload)
        if body:
            show_reprice(body)
        return

    if action_type == "start":
        payload.setdefault("startTime", local_iso(hhmm))
        body = call("POST", "/rentals", payload)
        if body:
            rental = body["rental"]
            if alias:
                RENTAL_IDS[alias] = rental["rentalId"]
            record_rental(rental)
            show_rental(f"START {alias or ''} → {rental['rentalId']}", rental, body)
        return

    paths = {
        "complete": "complete",
        "cancel": "cancel",
        "change_vehicle": "change-vehicle",
    }
    if action_type not in paths:
        raise ValueError(f"Unknown action type: {action_type}")
    rental_id = RENTAL_IDS.get(alias or "")
    if rental_id is None and not DRY_RUN:
        CONSOLE.print(f"[yellow]⚠ {action_type}: unknown rental alias {alias!r}, skipped[/]")
        return
    body = call("POST", f"/rentals/{rental_id or alias}/{paths[action_type]}", payload)
    if body:
        record_rental(body["rental"])
        show_rental(f"{action_type.upper()} {alias} → {rental_id}", body["rental"], body)


def record_rental(rental: Dict[str, Any]) -> None:
    RENTAL_ROWS[rental["rentalId"]] = {
        "rentalId": rental["rentalId"],
        "vehicleRef": rental["vehicleRef"],
        "customerRef": rental["customerRef"],
        "startTime": rental["startTime"],
        "endTime": rental.get("endTime") or "",
        "status": rental["status"],
        "totalMinutes": rental.get("totalMinutes") or 0,
        "baseAmount": float(rental["baseAmount"]) if rental.get("baseAmount") else 0.0,
        "finalAmount": float(rental["finalAmount"]) if rental.get("finalAmount") else 0.0,
    }


def show_rental(title: str, rental: Dict[str, Any], body: Dict[str, Any]) -> None:
    t = Table(title=title, box=box.SIMPLE, show_header=False)
    t.add_row("status", rental["status"])
    t.add_row("vehicle", rental["vehicleRef"])
    t.add_row("start", rental["startTime"])
    if rental.get("finalAmount") is not None:
        t.add_row("amount", f"₹{rental['finalAmount']} (base ₹{rental.get('baseAmount')})")
    for block in rental.get("pricingBreakdown") or []:
        night = " [magenta]night[/]" if block["isNightCharge"] else ""
        t.add_row(f"  {block['period']}", f"{block['minutes']} min ₹{block['rate']}{night}")
    if body.get("customerWarning"):
        t.add_row("[yellow]warning[/]", body["customerWarning"])
    for warning in body.get("warnings") or []:
        t.add_row("[red]consistency[/]", warning.get("message", ""))
    CONSOLE.print(t)


def show_ledger(title: str, ledger: Dict[str, Any]) -> None:
    summary = ledger.get("liveSummary") or ledger.get("summary") or {}
    t = Table(title=title, box=box.SIMPLE, show_header=False)
    t.add_row("status", ledger["status"])
    t.add_row("revenue", f"₹{summary.get('totalRevenue')}")
    t.add_row("bookings", str(summary.get("totalBookings")))
    t.add_row("hours", str(summary.get("operatingHours")))
    t.add_row("per hour", f"₹{summary.get('revenuePerHour')}")
    CONSOLE.print(t)


def show_reprice(report: Dict[str, Any]) -> None:
    t = Table(title="Reprice" + (" (dry run)" if report.get("dryRun") else ""), box=box.SIMPLE)
    t.add_column("Rental")
    t.add_column("Old")
    t.add_column("New")
    t.add_column("Diff")
    for record in report.get("records", []):
        t.add_row(record["rentalId"], record["oldAmount"], record["newAmount"], record["difference"])
    CONSOLE.print(t)
    CONSOLE.print(
        f"[cyan]total {report['totalOld']} → {report['totalNew']} ({report['percentageChange']}%), "
        f"{report['changed']} changed, {len(report.get('errors', []))} errors[/]"
    )


def snapshot_ledger(hhmm: str) -> None:
    ledger = call("GET", f"/daily-operations/{BUSINESS_DATE}")
    if not ledger:
        return
    summary = ledger.get("liveSummary") or ledger.get("summary") or {}
    SNAPSHOT_ROWS.append(
        {
            "time": hhmm,
            "status": ledger["status"],
            "totalBookings": int(summary.get("totalBookings", 0)),
            "completed": int(summary.get("completedBookings", 0)),
            "active": int(summary.get("activeBookings", 0)),
            "cancelled": int(summary.get("cancelledBookings", 0)),
            "vehiclesUsed": int(summary.get("vehiclesUsed", 0)),
            "revenue": float(summary.get("totalRevenue", 0)),
            "revenuePerHour": float(summary.get("revenuePerHour", 0)),
        }
    )


def export_excel_report(
    snapshots: List[Dict[str, Any]],
    rentals: List[Dict[str, Any]],
    filename: str = "rental_day_report.xlsx",
) -> None:
    if not snapshots and not rentals:
        CONSOLE.print("[yellow]⚠ Nothing to export[/]")
        return
    wb = Workbook()
    header_fill = PatternFill("solid", fgColor="FFF2CC")

    ledger_sheet = wb.active
    ledger_sheet.title = "Ledger"
    _write_sheet(
        ledger_sheet,
        ["Time", "Status", "Bookings", "Completed", "Active", "Cancelled", "Vehicles", "Revenue", "Revenue/h"],
        [
            [r["time"], r["status"], r["totalBookings"], r["completed"], r["active"], r["cancelled"],
             r["vehiclesUsed"], round(r["revenue"], 2), round(r["revenuePerHour"], 2)]
            for r in snapshots
        ],
        header_fill,
    )

    rental_sheet = wb.create_sheet("Rentals")
    _write_sheet(
        rental_sheet,
        ["Rental", "Vehicle", "Customer", "Start", "End", "Status", "Minutes", "Base", "Final"],
        [
            [r["rentalId"], r["vehicleRef"], r["customerRef"], r["startTime"], r["endTime"], r["status"],
             r["totalMinutes"], round(r["baseAmount"], 2), round(r["finalAmount"], 2)]
            for r in sorted(rentals, key=lambda row: row["rentalId"])
        ],
        header_fill,
    )

    try:
        wb.save(filename)
        CONSOLE.print(f"[green]✔ Excel exported: {filename}[/]")
    except OSError as exc:
        CONSOLE.print(f"[red]Failed to write Excel: {exc}[/]")


def _write_sheet(ws, headers: List[str], rows: List[List[Any]], header_fill: PatternFill) -> None:
    ws.append(headers)
    for c in range(1, len(headers) + 1):
        cell = ws.cell(row=1, column=c)
        cell.fill = header_fill
        cell.font = Font(bold=True)
        cell.alignment = Alignment(horizontal="center")
    for row in rows:
        ws.append(row)

    # auto-width
    for col_idx in range(1, ws.max_column + 1):
        max_len = 0
        for row_idx in range(1, ws.max_row + 1):
            val = ws.cell(row=row_idx, column=col_idx).value
            if val is not None:
                max_len = max(max_len, len(str(val)))
        ws.column_dimensions[get_column_letter(col_idx)].width = max(9, min(28, max_len + 2))


if __name__ == "__main__":
    main()
