from __future__ import annotations

import datetime as dt
import json
import logging
from pathlib import Path
from typing import Optional, Sequence, Tuple

import click
from click.core import ParameterSource

from siptrace.config_loader import AppConfig, load_env_file, resolve_config
from siptrace.logging_setup import setup_logging
from siptrace.services.call_analysis import (
    DEFAULT_LIMIT,
    AmbiguousSeedError,
    SeedQuery,
    analyze_call,
    list_calls,
    seed_time_range,
    show_calls,
)
from siptrace.services.correlation_progress import ProgressEvent, progress_emitter_context
from siptrace.services.filter_expr import build_filter_expression, compile_filter, search_criteria
from siptrace.services.flow_render import (
    render_call_table,
    render_flow,
    render_leg_table,
    render_message_table,
    render_raw_messages,
)
from siptrace.services.homer_client import HomerClient
from siptrace.services.pcap_store import PcapTraceStore
from siptrace.services.trace_store import AnalysisError, TimeRange, TraceStore, TraceStoreError
from siptrace.time_parser import now_ms, parse_time_value

LOGGER = logging.getLogger(__name__)


def _echo_progress(event: ProgressEvent) -> None:
    click.echo(event.message, err=True)


def _build_store(cfg: AppConfig, pcaps: Tuple[Path, ...], url: Optional[str]) -> TraceStore:
    if pcaps:
        return PcapTraceStore(list(pcaps))
    homer_url = url or cfg.homer.url
    if not homer_url:
        raise click.UsageError("Provide --pcap files or a Homer URL (--url, config or SIPTRACE_HOMER_URL)")
    return HomerClient(
        homer_url,
        username=cfg.homer.username,
        password=cfg.homer.password,
        timeout_seconds=cfg.homer.timeout_seconds,
    )


def _is_default(ctx: click.Context, name: str) -> bool:
    return ctx.get_parameter_source(name) in (ParameterSource.DEFAULT, None)


@click.group()
def main() -> None:
    """siptrace commands."""
    setup_logging()
    load_env_file()
    LOGGER.info("CLI bootstrap completed", extra={"category": "CONFIG"})


@main.command()
@click.argument("call_id", required=False)
@click.option("-c", "--correlate", multiple=True, help="SIP header to correlate legs by (repeatable).")
@click.option("-H", "--header", "header_prefixes", multiple=True, help="SIP header prefix shown as a table column.")
@click.option("-N", "--number", "numbers", multiple=True, help="Extra number to include in the fan-out search.")
@click.option("--from-user", default="", help="Seed: SIP from user.")
@click.option("--to-user", default="", help="Seed: SIP to user.")
@click.option("--since", default="10d", show_default=True, help="Range start: duration ago or timestamp.")
@click.option("--until", default="", help="Range end (default: now).")
@click.option("--at", "at_time", default="", help="Point in time; searches around it.")
@click.option("-l", "--limit", type=int, default=None, help="Max calls per search [default: 100].")
@click.option("-o", "--output", type=click.Choice(["json", "jsonl"]), default=None, help="Machine-readable output.")
@click.option("--pcap", "pcaps", multiple=True, type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--url", default=None, help="Homer URL (overrides config and SIPTRACE_HOMER_URL).")
@click.option("--config", "config_path", type=click.Path(path_type=Path), default=None)
@click.pass_context
def analyze(
    ctx: click.Context,
    call_id: Optional[str],
    correlate: Tuple[str, ...],
    header_prefixes: Tuple[str, ...],
    numbers: Tuple[str, ...],
    from_user: str,
    to_user: str,
    since: str,
    until: str,
    at_time: str,
    limit: Optional[int],
    output: Optional[str],
    pcaps: Tuple[Path, ...],
    url: Optional[str],
    config_path: Optional[Path],
) -> None:
    """Find every SIP leg belonging to the same call."""
    try:
        cfg = resolve_config(config_path)
        options = cfg.analysis.to_options(correlate, header_prefixes, numbers, limit)
    except ValueError as exc:
        raise click.ClickException(str(exc)) from exc

    if call_id and (from_user or to_user):
        raise click.UsageError("Provide either a Call-ID argument or --from-user/--to-user, not both")
    if not call_id and not (from_user and to_user):
        raise click.UsageError("Provide a Call-ID argument or both --from-user and --to-user")
    if at_time and not call_id and not (_is_default(ctx, "since") and _is_default(ctx, "until")):
        raise click.UsageError("Cannot use --at together with --since/--until")

    try:
        if at_time:
            time_range = seed_time_range(at_ms=parse_time_value(at_time), margin_ms=cfg.analysis.seed_margin_ms)
        else:
            time_range = seed_time_range(
                since_ms=parse_time_value(since),
                until_ms=parse_time_value(until) if until else now_ms(),
            )
        query = SeedQuery(time_range=time_range, call_id=call_id, from_user=from_user, to_user=to_user)
    except ValueError as exc:
        raise click.UsageError(str(exc)) from exc

    LOGGER.info(
        "CLI analyze command call_id=%s from=%s to=%s headers=%s pcaps=%d",
        call_id or "-",
        from_user or "-",
        to_user or "-",
        options.correlate_headers,
        len(pcaps),
        extra={"category": "CONFIG"},
    )
    store = _build_store(cfg, pcaps, url)

    try:
        with progress_emitter_context(_echo_progress if output is None else None):
            result = analyze_call(store, query, options)
    except AmbiguousSeedError as exc:
        click.echo(f"{exc}\n", err=True)
        for leg in exc.candidates:
            started = dt.datetime.fromtimestamp(leg.start_ms / 1000).strftime("%Y-%m-%d %H:%M:%S")
            click.echo(f"  {started}  {leg.call_id}  {leg.caller} → {leg.callee}", err=True)
        click.echo("", err=True)
        ctx.exit(1)
    except (TraceStoreError, AnalysisError) as exc:
        LOGGER.error("Analysis failed error=%s", exc, extra={"category": "ERRORS"})
        raise click.ClickException(str(exc)) from exc

    if not result.ok:
        for note in result.notes:
            click.echo(note, err=True)
        return

    if output == "json":
        click.echo(json.dumps([leg.to_dict() for leg in result.legs], indent=2))
        return
    if output == "jsonl":
        for leg in result.legs:
            click.echo(json.dumps(leg.to_dict()))
        return

    click.echo("")
    click.echo(render_leg_table(result.legs, result.dynamic_columns, result.leg_header_values))
    click.echo(render_flow(result))


def _resolve_time_range(ctx: click.Context, cfg: AppConfig, since: str, until: str, at_time: str) -> TimeRange:
    if at_time and not (_is_default(ctx, "since") and _is_default(ctx, "until")):
        raise click.UsageError("Cannot use --at together with --since/--until")
    try:
        if at_time:
            return seed_time_range(at_ms=parse_time_value(at_time), margin_ms=cfg.analysis.seed_margin_ms)
        return seed_time_range(
            since_ms=parse_time_value(since),
            until_ms=parse_time_value(until) if until else now_ms(),
        )
    except ValueError as exc:
        raise click.UsageError(str(exc)) from exc


def _filter_expression(number: str, from_user: str, to_user: str, user_agent: str, query: str) -> str:
    try:
        return build_filter_expression(search_criteria(number, from_user, to_user, user_agent, query))
    except ValueError as exc:
        raise click.UsageError(f"Invalid query: {exc}") from exc


def _echo_structured(records: Sequence[dict], output: str) -> None:
    if output == "json":
        click.echo(json.dumps(list(records), indent=2))
        return
    for record in records:
        click.echo(json.dumps(record))


def _store_options(func):
    func = click.option("--config", "config_path", type=click.Path(path_type=Path), default=None)(func)
    func = click.option("--url", default=None, help="Homer URL (overrides config and SIPTRACE_HOMER_URL).")(func)
    func = click.option(
        "--pcap", "pcaps", multiple=True, type=click.Path(exists=True, dir_okay=False, path_type=Path)
    )(func)
    func = click.option("--at", "at_time", default="", help="Point in time; searches around it.")(func)
    func = click.option("--until", default="", help="Range end (default: now).")(func)
    return func


def _filter_options(func):
    func = click.option("--ua", "user_agent", default="", help="Exact User-Agent.")(func)
    func = click.option("--to-user", default="", help="SIP to user.")(func)
    func = click.option("--from-user", default="", help="SIP from user.")(func)
    func = click.option("--number", default="", help="Number on either side of the call.")(func)
    func = click.option("-q", "--query", default="", help="Query, e.g. \"from_user = '123' AND status = 200\".")(func)
    return func


def _load_config(config_path: Optional[Path]) -> AppConfig:
    try:
        return resolve_config(config_path)
    except ValueError as exc:
        raise click.ClickException(str(exc)) from exc


@main.command()
@_filter_options
@click.option("--call-id", default="", help="Only messages of this Call-ID.")
@click.option("-m", "--method", "methods", multiple=True, help="Keep only this method or response code (repeatable).")
@click.option("--since", default="24h", show_default=True, help="Range start: duration ago or timestamp.")
@_store_options
@click.option("-l", "--limit", type=int, default=200, show_default=True, help="Max messages.")
@click.option("-o", "--output", type=click.Choice(["json", "jsonl"]), default=None, help="Machine-readable output.")
@click.pass_context
def search(
    ctx: click.Context,
    query: str,
    number: str,
    from_user: str,
    to_user: str,
    user_agent: str,
    call_id: str,
    methods: Tuple[str, ...],
    since: str,
    until: str,
    at_time: str,
    pcaps: Tuple[Path, ...],
    url: Optional[str],
    config_path: Optional[Path],
    limit: int,
    output: Optional[str],
) -> None:
    """Search SIP messages."""
    if limit <= 0:
        raise click.UsageError("--limit must be positive")
    cfg = _load_config(config_path)
    time_range = _resolve_time_range(ctx, cfg, since, until, at_time)
    expression = _filter_expression(number, from_user, to_user, user_agent, query)
    LOGGER.info(
        "CLI search command filter=%r call_id=%s methods=%s pcaps=%d",
        expression,
        call_id or "-",
        list(methods),
        len(pcaps),
        extra={"category": "CONFIG"},
    )
    store = _build_store(cfg, pcaps, url)

    try:
        messages = store.search(time_range, expression, call_id=call_id or None, limit=limit)
    except TraceStoreError as exc:
        LOGGER.error("Search failed error=%s", exc, extra={"category": "ERRORS"})
        raise click.ClickException(str(exc)) from exc

    if methods:
        # Applied to the fetched page, after the store limit.
        try:
            keep = compile_filter(" OR ".join(f"method = '{m.upper()}'" for m in methods))
        except ValueError as exc:
            raise click.UsageError(f"Invalid --method: {exc}") from exc
        messages = [m for m in messages if keep(m)]
    messages.sort(key=lambda m: m.timestamp_ms)

    if output:
        _echo_structured([m.to_dict() for m in messages], output)
        return
    if not messages:
        click.echo("No messages found.", err=True)
        return
    click.echo("")
    click.echo(render_message_table(messages))


@main.command()
@_filter_options
@click.option("--since", default="24h", show_default=True, help="Range start: duration ago or timestamp.")
@_store_options
@click.option("-l", "--limit", type=int, default=DEFAULT_LIMIT, show_default=True, help="Max calls.")
@click.option("-o", "--output", type=click.Choice(["json", "jsonl"]), default=None, help="Machine-readable output.")
@click.pass_context
def calls(
    ctx: click.Context,
    query: str,
    number: str,
    from_user: str,
    to_user: str,
    user_agent: str,
    since: str,
    until: str,
    at_time: str,
    pcaps: Tuple[Path, ...],
    url: Optional[str],
    config_path: Optional[Path],
    limit: int,
    output: Optional[str],
) -> None:
    """List calls, one row per Call-ID."""
    if limit <= 0:
        raise click.UsageError("--limit must be positive")
    cfg = _load_config(config_path)
    time_range = _resolve_time_range(ctx, cfg, since, until, at_time)
    expression = _filter_expression(number, from_user, to_user, user_agent, query)
    LOGGER.info(
        "CLI calls command filter=%r number=%s pcaps=%d",
        expression,
        number or "-",
        len(pcaps),
        extra={"category": "CONFIG"},
    )
    store = _build_store(cfg, pcaps, url)

    try:
        legs = list_calls(store, time_range, expression, limit=limit, number=number)
    except (TraceStoreError, AnalysisError) as exc:
        LOGGER.error("Call listing failed error=%s", exc, extra={"category": "ERRORS"})
        raise click.ClickException(str(exc)) from exc

    if output:
        _echo_structured([leg.to_dict() for leg in legs], output)
        return
    if not legs:
        click.echo("No calls found.", err=True)
        return
    click.echo("")
    click.echo(render_call_table(legs))


@main.command()
@click.argument("call_ids", nargs=-1, required=True)
@click.option("--since", default="10d", show_default=True, help="Range start: duration ago or timestamp.")
@_store_options
@click.option("--raw", is_flag=True, help="Print the raw SIP messages instead of the ladder.")
@click.pass_context
def show(
    ctx: click.Context,
    call_ids: Tuple[str, ...],
    since: str,
    until: str,
    at_time: str,
    pcaps: Tuple[Path, ...],
    url: Optional[str],
    config_path: Optional[Path],
    raw: bool,
) -> None:
    """Show the message flow of one or more calls."""
    cfg = _load_config(config_path)
    time_range = _resolve_time_range(ctx, cfg, since, until, at_time)
    LOGGER.info(
        "CLI show command call_ids=%s raw=%s pcaps=%d",
        list(call_ids),
        raw,
        len(pcaps),
        extra={"category": "CONFIG"},
    )
    store = _build_store(cfg, pcaps, url)

    try:
        result = show_calls(store, call_ids, time_range)
    except (TraceStoreError, AnalysisError) as exc:
        LOGGER.error("Show failed error=%s", exc, extra={"category": "ERRORS"})
        raise click.ClickException(str(exc)) from exc

    if not result.ok:
        for note in result.notes:
            click.echo(note, err=True)
        return

    click.echo("")
    if raw:
        click.echo(render_raw_messages(result.messages))
        return
    click.echo(render_leg_table(result.legs, title="Call Legs"))
    click.echo(render_flow(result))


if __name__ == "__main__":
    main()
