from __future__ import annotations

import logging
import sys
from time import perf_counter
from typing import Any, Dict, Optional, Sequence, Tuple

from rich.console import Console
from rich.table import Table

from .auth.providers import AuthError, TokenProvider, resolve_credential
from .config import RunConfig, dump_config, load_run_config, validate_run_config
from .graph.clients import ApiClient, graph_client, management_client, verify_token
from .graph.mail import notify_failure, send_report
from .logging import LogConfig, add_run_log_file, bind_runbook, get_logger, setup_logging
from .normalize.schema import Report, resolve_output_paths
from .report import render_report_html, write_report_html, write_run_summary
from .runbooks import get_runbook, list_runbooks
from .runbooks.base import RunContext
from .util.errors import AuthResolutionError, ConfigError, as_exit_code
from .util.rich_progress import RunProgress, render_run_summary_table
from .util.time import utc_now, utc_now_iso

LOG = get_logger(__name__)

OUT_SCHEMA_VERSION = "1"


class _StepTimers:
    def __init__(self) -> None:
        self._starts: Dict[str, float] = {}

    def start(self, key: str) -> None:
        self._starts[key] = perf_counter()

    def finish(self, key: str) -> Optional[int]:
        started = self._starts.pop(key, None)
        if started is None:
            return None
        return int((perf_counter() - started) * 1000)


def _log_event(
    logger: Any,
    level: int,
    message: str,
    *,
    step: str,
    phase: str,
    timers: Optional[_StepTimers] = None,
    timer_key: Optional[str] = None,
    **extra: Any,
) -> None:
    key = timer_key or step
    duration_ms = None
    if timers is not None:
        if phase == "start":
            timers.start(key)
        elif phase in {"complete", "error", "skipped"}:
            duration_ms = timers.finish(key)
    payload: Dict[str, Any] = {"step": step, "phase": phase, "event": f"{step}.{phase}"}
    if duration_ms is not None:
        payload["duration_ms"] = duration_ms
    payload.update(extra)
    logger.log(level, message, extra=payload)


def _token_provider(cfg: RunConfig) -> TokenProvider:
    try:
        credential = resolve_credential(cfg.tenant_id, cfg.client_id, cfg.client_secret)
    except AuthError as e:
        raise AuthResolutionError(str(e)) from e
    return TokenProvider(credential, authority_host=cfg.authority_host)


def _connect(cfg: RunConfig) -> Tuple[TokenProvider, ApiClient, ApiClient]:
    tokens = _token_provider(cfg)
    graph = graph_client(tokens, base_url=cfg.graph_base_url, page_size=cfg.page_size)
    management = management_client(tokens, base_url=cfg.management_base_url)
    return tokens, graph, management


def _mail_subject(title: str, report: Report) -> str:
    return f"{title} - {report.generated_at}"


def _summary_payload(
    cfg: RunConfig,
    *,
    status: str,
    started_at: str,
    report: Optional[Report],
    delivered: bool,
    fatal_error: Optional[str],
) -> Dict[str, Any]:
    return {
        "schema_version": OUT_SCHEMA_VERSION,
        "runbook": cfg.runbook,
        "status": status,
        "started_at": started_at,
        "finished_at": utc_now_iso(),
        "simulate": cfg.simulate,
        "delivered": delivered,
        "recipients": list(cfg.recipients) if delivered else [],
        "rows": len(report.rows) if report else 0,
        "counts_by_severity": report.counts_by_severity() if report else {},
        "summary": dict(report.summary) if report else {},
        "error": fatal_error,
        "config": dump_config(cfg),
    }


def cmd_run(cfg: RunConfig) -> int:
    runbook = get_runbook(str(cfg.runbook or ""))
    validate_run_config(cfg, required=runbook.required_settings)
    bind_runbook(runbook.name)

    started_at = utc_now_iso()
    timers = _StepTimers()
    if cfg.outdir:
        add_run_log_file(resolve_output_paths(cfg.outdir).run_log)

    _log_event(
        LOG,
        logging.INFO,
        "Starting runbook",
        step="run",
        phase="start",
        timers=timers,
        runbook=runbook.name,
        simulate=cfg.simulate,
    )

    _log_event(LOG, logging.INFO, "Acquiring token", step="auth", phase="start", timers=timers)
    tokens, graph, management = _connect(cfg)
    try:
        verify_token(tokens)
    except AuthError as e:
        _log_event(LOG, logging.ERROR, "Token acquisition failed", step="auth", phase="error", timers=timers)
        raise AuthResolutionError(str(e)) from e
    _log_event(LOG, logging.INFO, "Token acquired", step="auth", phase="complete", timers=timers)

    status = "OK"
    fatal_error: Optional[str] = None
    report: Optional[Report] = None
    delivered = False
    try:
        ctx = RunContext(
            cfg=cfg,
            graph=graph,
            now=utc_now(),
            management=management,
            progress=RunProgress(enabled=cfg.progress),
        )
        _log_event(LOG, logging.INFO, "Building report", step="report", phase="start", timers=timers)
        with ctx.progress:
            report = runbook.build_report(ctx)
        html_text = render_report_html(report)
        _log_event(
            LOG,
            logging.INFO,
            "Report built",
            step="report",
            phase="complete",
            timers=timers,
            rows=len(report.rows),
            severity_counts=report.counts_by_severity(),
        )

        if cfg.outdir:
            path = write_report_html(cfg.outdir, report, html_text)
            LOG.info("Report written", extra={"path": str(path)})

        if cfg.send_mail:
            _log_event(LOG, logging.INFO, "Sending report", step="deliver", phase="start", timers=timers)
            send_report(
                graph,
                str(cfg.sender),
                _mail_subject(runbook.title, report),
                html_text,
                cfg.recipients,
                attach=cfg.attach_report,
                attachment_name=f"{runbook.name}-report.html",
            )
            delivered = True
            _log_event(LOG, logging.INFO, "Report sent", step="deliver", phase="complete", timers=timers)
        else:
            _log_event(LOG, logging.INFO, "Mail delivery disabled", step="deliver", phase="skipped")

        _log_event(LOG, logging.INFO, "Run complete", step="run", phase="complete", timers=timers)
    except Exception as e:
        status = "FAILED"
        fatal_error = str(e)
        if cfg.notify_on_failure:
            notify_failure(graph, cfg.sender, cfg.recipients, runbook.name, e)
        raise
    finally:
        if cfg.outdir:
            write_run_summary(
                cfg.outdir,
                _summary_payload(
                    cfg,
                    status=status,
                    started_at=started_at,
                    report=report,
                    delivered=delivered,
                    fatal_error=fatal_error,
                ),
            )

    render_run_summary_table(
        enabled=cfg.progress,
        runbook=runbook.name,
        status=status,
        summary=report.summary if report else {},
        recipients=cfg.recipients if delivered else [],
    )
    return 0


def cmd_validate_auth(cfg: RunConfig) -> int:
    tokens = _token_provider(cfg)
    try:
        verify_token(tokens)
    except AuthError as e:
        raise AuthResolutionError(str(e)) from e
    LOG.info("Authentication validated", extra={"tenant_id": tokens.tenant_id})
    # Print to stdout a concise success message (no secrets)
    print(f"OK: token acquired for tenant {tokens.tenant_id}")
    return 0


def cmd_list_runbooks(cfg: RunConfig, console: Optional[Console] = None) -> int:
    table = Table(title="Runbooks", show_header=True, header_style="bold")
    table.add_column("Name", style="cyan")
    table.add_column("Title")
    table.add_column("Required settings")
    for runbook in list_runbooks():
        table.add_row(runbook.name, runbook.title, ", ".join(runbook.required_settings) or "-")
    (console or Console()).print(table)
    return 0


def main(argv: Optional[Sequence[str]] = None) -> None:
    try:
        command, cfg = load_run_config(argv=list(argv) if argv is not None else None)
        setup_logging(LogConfig(level=cfg.log_level, json_logs=cfg.json_logs))

        if command == "run":
            code = cmd_run(cfg)
        elif command == "validate-auth":
            code = cmd_validate_auth(cfg)
        elif command == "list-runbooks":
            code = cmd_list_runbooks(cfg)
        else:
            raise ConfigError(f"Unknown command: {command}")

        sys.exit(code)
    except SystemExit:
        raise
    except BrokenPipeError:
        # Common when users pipe to `head` or similar tools.
        sys.exit(0)
    except Exception as e:
        setup_logging(LogConfig())  # ensure something is configured
        if isinstance(e, AuthError):
            e = AuthResolutionError(str(e))
        LOG.error("Execution failed", extra={"error": str(e), "error_type": type(e).__name__})
        sys.exit(as_exit_code(e))


if __name__ == "__main__":
    main()
