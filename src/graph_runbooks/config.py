from __future__ import annotations

import argparse
import json
import os
import warnings
from dataclasses import dataclass, field, fields
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

import yaml

from .auth.providers import DEFAULT_AUTHORITY_HOST
from .graph.clients import DEFAULT_GRAPH_BASE_URL, DEFAULT_MANAGEMENT_BASE_URL, DEFAULT_PAGE_SIZE
from .util.errors import ConfigError
from .util.serialization import sanitize_for_json

# --------
# Defaults
# --------
DEFAULT_INACTIVE_DAYS = 90
DEFAULT_EXPIRY_WARNING_DAYS = 30
DEFAULT_DEVICE_STALE_DAYS = 30
DEFAULT_LICENSE_MIN_AVAILABLE = 5
DEFAULT_JUSTIFICATION_MIN_LENGTH = 15
DEFAULT_AUDIT_DAYS = 7
DEFAULT_WORKERS_LOOKUP = 1
DEFAULT_COST_TIMEFRAME = "MonthToDate"
DEFAULT_SERVICE_ACCOUNT_PREFIXES = ("svc-", "svc_", "sa-")
DEFAULT_PRIVILEGED_ROLES = (
    "Global Administrator",
    "Privileged Role Administrator",
    "Privileged Authentication Administrator",
    "Security Administrator",
    "Conditional Access Administrator",
    "Exchange Administrator",
    "SharePoint Administrator",
    "User Administrator",
    "Application Administrator",
    "Cloud Application Administrator",
)
DEFAULT_EXPECTED_AUTH_METHODS = (
    "microsoftAuthenticatorAuthenticationMethod",
    "fido2AuthenticationMethod",
    "phoneAuthenticationMethod",
    "softwareOathAuthenticationMethod",
    "windowsHelloForBusinessAuthenticationMethod",
)
COST_TIMEFRAMES = {"MonthToDate", "BillingMonthToDate", "TheLastMonth", "TheLastBillingMonth", "WeekToDate"}

BOOL_CONFIG_KEYS = {
    "attach_report",
    "send_mail",
    "simulate",
    "disable_inactive",
    "notify_on_failure",
    "json_logs",
    "progress",
}
INT_CONFIG_KEYS = {
    "page_size",
    "workers_lookup",
    "inactive_days",
    "expiry_warning_days",
    "device_stale_days",
    "license_min_available",
    "justification_min_length",
    "audit_days",
}
# Day windows where zero would match every record.
POSITIVE_CONFIG_KEYS = {"inactive_days", "device_stale_days", "audit_days"}
LIST_CONFIG_KEYS = {
    "recipients",
    "excluded_ids",
    "service_account_prefixes",
    "privileged_roles",
    "expected_auth_methods",
    "subscription_ids",
}
STR_CONFIG_KEYS = {
    "tenant_id",
    "client_id",
    "sender",
    "employee_id",
    "target_group_id",
    "cost_timeframe",
    "log_level",
    "graph_base_url",
    "management_base_url",
    "authority_host",
}
DECIMAL_CONFIG_KEYS = {"cost_budget"}
PATH_CONFIG_KEYS = {"outdir"}
ALLOWED_CONFIG_KEYS = (
    BOOL_CONFIG_KEYS | INT_CONFIG_KEYS | LIST_CONFIG_KEYS | STR_CONFIG_KEYS | DECIMAL_CONFIG_KEYS | PATH_CONFIG_KEYS
)
SECRET_CONFIG_KEYS = {"client_secret"}

ENV_PREFIX = "GRAPH_RB_"


@dataclass(frozen=True)
class RunConfig:
    # Credentials (secret comes from the environment only)
    tenant_id: Optional[str] = None
    client_id: Optional[str] = None
    client_secret: Optional[str] = field(default=None, repr=False)

    # Delivery
    sender: Optional[str] = None
    recipients: List[str] = field(default_factory=list)
    attach_report: bool = False
    send_mail: bool = True
    notify_on_failure: bool = True

    # Behaviour
    runbook: Optional[str] = None
    simulate: bool = True
    disable_inactive: bool = False
    outdir: Optional[Path] = None
    json_logs: bool = False
    log_level: str = "INFO"
    progress: bool = False

    # Fetch
    page_size: int = DEFAULT_PAGE_SIZE
    workers_lookup: int = DEFAULT_WORKERS_LOOKUP

    # Thresholds
    inactive_days: int = DEFAULT_INACTIVE_DAYS
    expiry_warning_days: int = DEFAULT_EXPIRY_WARNING_DAYS
    device_stale_days: int = DEFAULT_DEVICE_STALE_DAYS
    license_min_available: int = DEFAULT_LICENSE_MIN_AVAILABLE
    justification_min_length: int = DEFAULT_JUSTIFICATION_MIN_LENGTH
    audit_days: int = DEFAULT_AUDIT_DAYS
    cost_budget: Optional[Decimal] = None

    # Filters
    excluded_ids: List[str] = field(default_factory=list)
    service_account_prefixes: List[str] = field(default_factory=lambda: list(DEFAULT_SERVICE_ACCOUNT_PREFIXES))
    privileged_roles: List[str] = field(default_factory=lambda: list(DEFAULT_PRIVILEGED_ROLES))
    expected_auth_methods: List[str] = field(default_factory=lambda: list(DEFAULT_EXPECTED_AUTH_METHODS))

    # Group sync
    employee_id: Optional[str] = None
    target_group_id: Optional[str] = None

    # Cost
    subscription_ids: List[str] = field(default_factory=list)
    cost_timeframe: str = DEFAULT_COST_TIMEFRAME

    # Endpoints
    graph_base_url: str = DEFAULT_GRAPH_BASE_URL
    management_base_url: str = DEFAULT_MANAGEMENT_BASE_URL
    authority_host: str = DEFAULT_AUTHORITY_HOST


def _parse_config_file(path: Path) -> Dict[str, Any]:
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")
    text = path.read_text(encoding="utf-8")
    try:
        if path.suffix.lower() == ".json":
            data = json.loads(text)
        else:
            data = yaml.safe_load(text) or {}
    except (yaml.YAMLError, json.JSONDecodeError) as e:
        raise ValueError(f"Failed to parse config file {path}: {e}") from e
    if not isinstance(data, dict):
        raise ValueError("Top-level config must be an object")
    return data


def _env_str(name: str) -> Optional[str]:
    raw = os.getenv(name)
    if raw is None:
        return None
    raw = raw.strip()
    if not raw:
        return None
    return raw


def _env_bool(name: str) -> Optional[bool]:
    raw = _env_str(name)
    if raw is None:
        return None
    return raw.lower() in {"1", "true", "yes", "on"}


def _env_int(name: str) -> Optional[int]:
    raw = _env_str(name)
    if raw is None:
        return None
    try:
        return int(raw)
    except ValueError:
        return None


def _coerce_bool(key: str, value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        raw = value.strip().lower()
        if raw in {"1", "true", "yes", "on"}:
            return True
        if raw in {"0", "false", "no", "off"}:
            return False
    raise ValueError(f"Config field '{key}' must be a boolean")


def _coerce_int(key: str, value: Any) -> int:
    if isinstance(value, int) and not isinstance(value, bool):
        return value
    if isinstance(value, str) and value.strip():
        try:
            return int(value)
        except ValueError:
            pass
    raise ValueError(f"Config field '{key}' must be an integer")


def _coerce_decimal(key: str, value: Any) -> Decimal:
    if isinstance(value, bool):
        raise ValueError(f"Config field '{key}' must be a number")
    try:
        return Decimal(str(value).strip())
    except (InvalidOperation, ValueError) as e:
        raise ValueError(f"Config field '{key}' must be a number") from e


def _coerce_list(key: str, value: Any) -> List[str]:
    if isinstance(value, str):
        return [v.strip() for v in value.split(",") if v.strip()]
    if isinstance(value, (list, tuple)) and all(isinstance(v, str) for v in value):
        return [v.strip() for v in value if v.strip()]
    raise ValueError(f"Config field '{key}' must be a list of strings or comma-separated string")


def _normalize_config_file(data: Dict[str, Any]) -> Dict[str, Any]:
    secrets = sorted(set(data.keys()) & SECRET_CONFIG_KEYS)
    if secrets:
        warnings.warn(
            f"Secrets are not read from config files; set {ENV_PREFIX}CLIENT_SECRET instead "
            f"(ignored: {', '.join(secrets)})"
        )
    unknown = sorted(set(data.keys()) - ALLOWED_CONFIG_KEYS - SECRET_CONFIG_KEYS)
    if unknown:
        warnings.warn(f"Unknown config keys ignored: {', '.join(unknown)}")
    normalized: Dict[str, Any] = {}
    for key, value in data.items():
        if key not in ALLOWED_CONFIG_KEYS:
            continue
        if value is None:
            normalized[key] = None
            continue
        if key in LIST_CONFIG_KEYS:
            normalized[key] = _coerce_list(key, value)
        elif key in BOOL_CONFIG_KEYS:
            normalized[key] = _coerce_bool(key, value)
        elif key in INT_CONFIG_KEYS:
            normalized[key] = _coerce_int(key, value)
        elif key in DECIMAL_CONFIG_KEYS:
            normalized[key] = _coerce_decimal(key, value)
        elif key in PATH_CONFIG_KEYS:
            if isinstance(value, (str, Path)):
                normalized[key] = value
            else:
                raise ValueError(f"Config field '{key}' must be a string path")
        elif isinstance(value, str):
            normalized[key] = value
        else:
            raise ValueError(f"Config field '{key}' must be a string")
    return _compact_dict(normalized)


def _compact_dict(data: Dict[str, Any]) -> Dict[str, Any]:
    """
    Drop keys with None values so they don't override lower-precedence config.
    """
    return {k: v for k, v in data.items() if v is not None}


def _merge_dicts(a: Dict[str, Any], b: Dict[str, Any]) -> Dict[str, Any]:
    """
    Shallow merge: values in b override a.
    """
    merged = dict(a)
    merged.update(b)
    return merged


def _timestamp_dir(base: Union[str, Path], runbook: Optional[str]) -> Path:
    ts = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%SZ")
    return Path(base) / (runbook or "run") / ts


def _env_config() -> Dict[str, Any]:
    env: Dict[str, Any] = {}
    for key in sorted(ALLOWED_CONFIG_KEYS | SECRET_CONFIG_KEYS):
        name = f"{ENV_PREFIX}{key.upper()}"
        if key in BOOL_CONFIG_KEYS:
            env[key] = _env_bool(name)
        elif key in INT_CONFIG_KEYS:
            env[key] = _env_int(name)
        else:
            env[key] = _env_str(name)
    return _compact_dict(env)


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="graph-runbooks", description="Directory report runbooks")
    subparsers = parser.add_subparsers(dest="command", required=True)

    # common flags builder
    def add_common(p: argparse.ArgumentParser) -> None:
        p.add_argument("--config", type=Path, help="Optional YAML/JSON config file")
        p.add_argument(
            "--json-logs",
            action=argparse.BooleanOptionalAction,
            default=None,
            help="Enable JSON logs",
        )
        p.add_argument("--log-level", default=None, help="Log level (INFO, DEBUG, ...)")
        p.add_argument("--tenant-id", default=None, help="Directory tenant id")
        p.add_argument("--client-id", default=None, help="App registration client id")

    # run
    p_run = subparsers.add_parser("run", help="Run one runbook end to end")
    p_run.add_argument("runbook", help="Runbook name (see list-runbooks)")
    add_common(p_run)
    p_run.add_argument("--outdir", type=Path, default=None, help="Write report.html/run_summary.json under DIR/<runbook>/<ts>")
    p_run.add_argument("--sender", default=None, help="Mailbox the report is sent from")
    p_run.add_argument("--recipients", default=None, help="Comma-separated recipient addresses")
    p_run.add_argument(
        "--attach-report",
        action=argparse.BooleanOptionalAction,
        default=None,
        help="Also attach the HTML report as a file",
    )
    p_run.add_argument(
        "--send-mail",
        action=argparse.BooleanOptionalAction,
        default=None,
        help="Deliver the report by mail (default: on)",
    )
    p_run.add_argument(
        "--simulate",
        action=argparse.BooleanOptionalAction,
        default=None,
        help="Report intended changes without mutating the directory (default: on)",
    )
    p_run.add_argument(
        "--disable-inactive",
        action=argparse.BooleanOptionalAction,
        default=None,
        help="inactive-users: disable accounts past the cutoff (only acted on with --no-simulate)",
    )
    p_run.add_argument(
        "--notify-on-failure",
        action=argparse.BooleanOptionalAction,
        default=None,
        help="Mail a failure notice when the run aborts (default: on)",
    )
    p_run.add_argument(
        "--progress",
        action=argparse.BooleanOptionalAction,
        default=None,
        help="Show console progress for per-entity lookups",
    )
    p_run.add_argument("--page-size", type=int, default=None, help=f"Page size cap (default {DEFAULT_PAGE_SIZE})")
    p_run.add_argument(
        "--workers-lookup",
        type=int,
        default=None,
        help=f"Parallel per-entity lookups (default {DEFAULT_WORKERS_LOOKUP}, sequential)",
    )
    p_run.add_argument("--inactive-days", type=int, default=None, help=f"Inactivity cutoff (default {DEFAULT_INACTIVE_DAYS})")
    p_run.add_argument(
        "--expiry-warning-days",
        type=int,
        default=None,
        help=f"Expiry warning window (default {DEFAULT_EXPIRY_WARNING_DAYS})",
    )
    p_run.add_argument(
        "--device-stale-days",
        type=int,
        default=None,
        help=f"Device last-sync cutoff (default {DEFAULT_DEVICE_STALE_DAYS})",
    )
    p_run.add_argument(
        "--license-min-available",
        type=int,
        default=None,
        help=f"Minimum free seats per SKU (default {DEFAULT_LICENSE_MIN_AVAILABLE})",
    )
    p_run.add_argument(
        "--justification-min-length",
        type=int,
        default=None,
        help=f"Minimum PIM justification length (default {DEFAULT_JUSTIFICATION_MIN_LENGTH})",
    )
    p_run.add_argument("--audit-days", type=int, default=None, help=f"Audit lookback window (default {DEFAULT_AUDIT_DAYS})")
    p_run.add_argument("--excluded-ids", default=None, help="Comma-separated object ids/UPNs to skip")
    p_run.add_argument("--employee-id", default=None, help="group-sync: employeeId value selecting members")
    p_run.add_argument("--target-group-id", default=None, help="group-sync: group object id")
    p_run.add_argument("--subscription-ids", default=None, help="subscription-cost: comma-separated subscription ids")
    p_run.add_argument("--cost-timeframe", default=None, choices=sorted(COST_TIMEFRAMES), help="Cost query timeframe")
    p_run.add_argument("--cost-budget", default=None, help="subscription-cost: budget per subscription")

    # validate-auth
    p_val = subparsers.add_parser("validate-auth", help="Acquire a directory token to validate credentials")
    add_common(p_val)

    # list-runbooks
    subparsers.add_parser("list-runbooks", help="List available runbooks")
    return parser


def load_run_config(
    args: Optional[argparse.Namespace] = None,
    argv: Optional[list[str]] = None,
) -> Tuple[str, RunConfig]:
    """
    Build RunConfig by merging defaults, optional config file, env vars, and CLI args.
    Precedence (low -> high): defaults < config file < env < CLI.

    Returns:
      (command, RunConfig) where command is the subcommand selected: run|validate-auth|list-runbooks
    """
    parser = _build_parser()
    ns = args if args is not None else parser.parse_args(argv)
    command = ns.command

    # config file
    file_cfg: Dict[str, Any] = {}
    if getattr(ns, "config", None):
        file_cfg = _normalize_config_file(_parse_config_file(Path(ns.config)))

    # env
    env_cfg = _env_config()

    # CLI
    cli_cfg: Dict[str, Any] = _compact_dict(
        {
            "tenant_id": getattr(ns, "tenant_id", None),
            "client_id": getattr(ns, "client_id", None),
            "json_logs": getattr(ns, "json_logs", None),
            "log_level": getattr(ns, "log_level", None),
            "outdir": getattr(ns, "outdir", None),
            "sender": getattr(ns, "sender", None),
            "recipients": getattr(ns, "recipients", None),
            "attach_report": getattr(ns, "attach_report", None),
            "send_mail": getattr(ns, "send_mail", None),
            "simulate": getattr(ns, "simulate", None),
            "disable_inactive": getattr(ns, "disable_inactive", None),
            "notify_on_failure": getattr(ns, "notify_on_failure", None),
            "progress": getattr(ns, "progress", None),
            "page_size": getattr(ns, "page_size", None),
            "workers_lookup": getattr(ns, "workers_lookup", None),
            "inactive_days": getattr(ns, "inactive_days", None),
            "expiry_warning_days": getattr(ns, "expiry_warning_days", None),
            "device_stale_days": getattr(ns, "device_stale_days", None),
            "license_min_available": getattr(ns, "license_min_available", None),
            "justification_min_length": getattr(ns, "justification_min_length", None),
            "audit_days": getattr(ns, "audit_days", None),
            "excluded_ids": getattr(ns, "excluded_ids", None),
            "employee_id": getattr(ns, "employee_id", None),
            "target_group_id": getattr(ns, "target_group_id", None),
            "subscription_ids": getattr(ns, "subscription_ids", None),
            "cost_timeframe": getattr(ns, "cost_timeframe", None),
            "cost_budget": getattr(ns, "cost_budget", None),
        }
    )

    merged = _merge_dicts(file_cfg, _merge_dicts(env_cfg, cli_cfg))
    runbook = getattr(ns, "runbook", None)
    return command, _build_run_config(merged, command=command, runbook=runbook)


def _build_run_config(merged: Dict[str, Any], *, command: str, runbook: Optional[str]) -> RunConfig:
    kwargs: Dict[str, Any] = {}
    for key, value in merged.items():
        if key in LIST_CONFIG_KEYS:
            kwargs[key] = _coerce_list(key, value)
        elif key in BOOL_CONFIG_KEYS:
            kwargs[key] = _coerce_bool(key, value)
        elif key in INT_CONFIG_KEYS:
            kwargs[key] = _coerce_int(key, value)
        elif key in DECIMAL_CONFIG_KEYS:
            kwargs[key] = _coerce_decimal(key, value)
        elif key in STR_CONFIG_KEYS or key in SECRET_CONFIG_KEYS:
            kwargs[key] = str(value)

    outdir_raw = merged.get("outdir")
    if outdir_raw:
        kwargs["outdir"] = _timestamp_dir(outdir_raw, runbook) if command == "run" else Path(outdir_raw)
    if "log_level" in kwargs:
        kwargs["log_level"] = kwargs["log_level"].upper()
    timeframe = kwargs.get("cost_timeframe")
    if timeframe is not None and timeframe not in COST_TIMEFRAMES:
        raise ValueError(f"Config field 'cost_timeframe' must be one of: {', '.join(sorted(COST_TIMEFRAMES))}")
    return RunConfig(runbook=runbook, **kwargs)


def validate_run_config(cfg: RunConfig, *, required: Sequence[str] = ()) -> None:
    """
    Fail fast, before any network call, on settings the run cannot work without.
    """
    problems: List[str] = []
    for name in ("tenant_id", "client_id", "client_secret"):
        if not getattr(cfg, name):
            problems.append(f"{name} is required ({ENV_PREFIX}{name.upper()})")
    if cfg.send_mail:
        if not cfg.sender:
            problems.append("sender is required when send_mail is enabled")
        if not cfg.recipients:
            problems.append("at least one recipient is required when send_mail is enabled")
    for name in required:
        value = getattr(cfg, name, None)
        if value is None or value == "" or value == []:
            problems.append(f"{name} is required for runbook {cfg.runbook}")
    for name in sorted(INT_CONFIG_KEYS):
        value = int(getattr(cfg, name))
        if name in POSITIVE_CONFIG_KEYS and value <= 0:
            problems.append(f"{name} must be positive")
        elif value < 0:
            problems.append(f"{name} must not be negative")
    if cfg.workers_lookup < 1:
        problems.append("workers_lookup must be at least 1")
    if problems:
        raise ConfigError("; ".join(problems))


def dump_config(cfg: RunConfig) -> Dict[str, Any]:
    out = {f.name: getattr(cfg, f.name) for f in fields(cfg)}
    return sanitize_for_json(out)
