"""
CLI entry point: tradeloop run | status | close | health.

Every command loads config from --config (default config.yaml). ``run``
drives one decision-loop run and prints each step; the journal and the
structured event stream receive the same data.
"""

import dataclasses
import json
import logging
import sys
from datetime import datetime, timezone

import click
from dotenv import load_dotenv

from config import load_config

load_dotenv()

logger = logging.getLogger("tradeloop")


def _setup_logging() -> None:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(name)s %(levelname)s  %(message)s",
        stream=sys.stderr,
    )


def _load_replies(path: str) -> list:
    """A JSON array of replies, or one reply per line."""
    with open(path) as f:
        text = f.read()
    stripped = text.strip()
    if stripped.startswith("["):
        return json.loads(stripped)
    return [line for line in text.splitlines() if line.strip()]


@click.group()
@click.option("--config", "config_path", default="config.yaml", help="Path to config file.")
@click.pass_context
def cli(ctx: click.Context, config_path: str) -> None:
    """tradeloop: bounded plan -> act -> observe trading agent (NSE, Dhan)."""
    _setup_logging()
    ctx.ensure_object(dict)
    ctx.obj["config_path"] = config_path


# ---------- tradeloop run ----------


@cli.command()
@click.option("--goal", required=True, help="Natural-language trading goal.")
@click.option("--max-steps", default=None, type=int, help="Override agent.max_steps_per_run.")
@click.option(
    "--dry-run",
    "dry_run",
    default=None,
    type=click.Path(exists=True, dir_okay=False),
    help="Replay planner replies from FILE (JSON array or one per line). Forces paper trading.",
)
@click.option("--ignore-hours", is_flag=True, help="Skip the market-hours gate.")
@click.option("--json", "as_json", is_flag=True, help="Print the run result as JSON.")
@click.pass_context
def run(
    ctx: click.Context,
    goal: str,
    max_steps: int | None,
    dry_run: str | None,
    ignore_hours: bool,
    as_json: bool,
) -> None:
    """Run the decision loop once for GOAL."""
    cfg = load_config(ctx.obj["config_path"])
    from agent.planner import OllamaPlanner, ScriptedPlanner
    from agent.runner import AgentRunner
    from cli.output import format_run_result
    from cli.runtime import build_runtime

    if max_steps is not None and max_steps < 1:
        raise click.BadParameter("must be >= 1", param_hint="--max-steps")

    if dry_run:
        cfg = dataclasses.replace(cfg, execution=dataclasses.replace(cfg.execution, live=False))
        planner = ScriptedPlanner(_load_replies(dry_run))
    else:
        planner = OllamaPlanner(cfg.planner.host, cfg.planner.model, timeout=cfg.planner.timeout)

    if cfg.execution.live:
        click.echo("LIVE TRADING is ON - orders go to the broker.", err=True)

    rt = build_runtime(cfg)
    runner = AgentRunner(
        goal,
        planner,
        rt.dispatcher,
        cfg,
        max_steps=max_steps,
        ignore_market_hours=ignore_hours,
        journal=rt.journal,
        events=rt.events,
    )
    result = runner.run()

    if as_json:
        from agent.contracts import to_json

        click.echo(to_json(result.to_dict()))
    else:
        click.echo(format_run_result(result))
    raise SystemExit(0 if result.ok else 1)


# ---------- tradeloop status ----------


@cli.command()
@click.option("--limit", default=10, help="Number of recently closed positions to show.")
@click.pass_context
def status(ctx: click.Context, limit: int) -> None:
    """Show tracked positions, today's realized PnL and safety state."""
    cfg = load_config(ctx.obj["config_path"])
    from cli.output import format_positions
    from cli.runtime import open_ledger
    from execution.models import PositionStatus

    ledger = open_ledger(cfg)
    active = ledger.list_active()
    closed = ledger.list_positions(status=PositionStatus.CLOSED, limit=limit)

    click.echo(f"Mode             : {'LIVE' if cfg.execution.live else 'paper'}")
    click.echo(f"Kill switch      : {'ON' if cfg.risk.kill_switch else 'off'}")
    today = datetime.now(timezone.utc).date()
    click.echo(f"Realized today   : ₹{ledger.realized_pnl_for(today)}")
    click.echo(f"Active / max     : {len(active)} / {cfg.risk.max_concurrent_positions}")
    click.echo(format_positions(active, closed))


# ---------- tradeloop close ----------


@cli.command()
@click.option("--segment", required=True, help="Exchange segment (NSE, NSE_FNO, IDX_I, ...).")
@click.option("--security-id", "security_id", required=True, help="Broker security id.")
@click.option("--price", required=True, type=str, help="Exit price.")
@click.pass_context
def close(ctx: click.Context, segment: str, security_id: str, price: str) -> None:
    """Close the tracked position for SEGMENT:SECURITY_ID at PRICE (ledger only)."""
    cfg = load_config(ctx.obj["config_path"])
    from cli.output import format_position
    from cli.runtime import open_ledger
    from execution.ledger import LedgerError

    ledger = open_ledger(cfg)
    try:
        closed = ledger.close(segment, security_id, price)
    except (LedgerError, ArithmeticError) as exc:
        raise click.ClickException(f"Cannot close: {exc}") from exc
    if closed is None:
        click.echo(f"No active position for {segment}:{security_id}.")
        raise SystemExit(1)
    click.echo("Closed:")
    click.echo(format_position(closed))


# ---------- tradeloop health ----------


@cli.command()
@click.pass_context
def health(ctx: click.Context) -> None:
    """Check system health: config, ledger DB, idempotency DB, broker credentials.

    Exit code 0 = healthy, 1 = unhealthy. Designed for Docker HEALTHCHECK.
    """
    checks: list[tuple[str, bool, str]] = []

    try:
        cfg = load_config(ctx.obj["config_path"])
        mode = "live" if cfg.execution.live else "paper"
        checks.append(("config", True, f"loaded ({mode}, max {cfg.agent.max_steps_per_run} steps)"))
    except Exception as e:
        checks.append(("config", False, str(e)))
        _print_health(checks)
        raise SystemExit(1)

    try:
        from cli.runtime import open_ledger
        ledger = open_ledger(cfg)
        checks.append(("ledger", True, f"{ledger.count_active()} active position(s) in {cfg.execution.ledger_path}"))
    except Exception as e:
        checks.append(("ledger", False, str(e)))

    try:
        from execution.idempotency import IdempotencyStore
        store = IdempotencyStore(cfg.execution.idempotency_path)
        checks.append(("idempotency", True, f"{store.count()} key(s) in {cfg.execution.idempotency_path}"))
    except Exception as e:
        checks.append(("idempotency", False, str(e)))

    has_creds = bool(cfg.broker.client_id and cfg.broker.access_token)
    if has_creds:
        checks.append(("broker", True, "credentials present"))
    elif cfg.execution.live:
        checks.append(("broker", False, "LIVE_TRADING is on but DHAN_CLIENT_ID / DHAN_ACCESS_TOKEN are missing"))
    else:
        checks.append(("broker", True, "no credentials (paper mode, market data unavailable)"))

    _print_health(checks)
    healthy = all(ok for _, ok, _ in checks)
    raise SystemExit(0 if healthy else 1)


def _print_health(checks: list[tuple[str, bool, str]]) -> None:
    for name, ok, detail in checks:
        status = "OK" if ok else "FAIL"
        click.echo(f"  [{status}] {name}: {detail}")
    healthy = all(ok for _, ok, _ in checks)
    click.echo(f"\nHealth: {'HEALTHY' if healthy else 'UNHEALTHY'}")


if __name__ == "__main__":
    cli()
