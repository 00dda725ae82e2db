"""
CLI entrypoint for the copy-follow engine.

Provides commands for follow, watch, validate, reset-symbol and agents.
"""
import asyncio
import json
from decimal import Decimal
from pathlib import Path
from typing import List, Optional

import typer

from src.config.config import Config, load_config
from src.data.agent_feed import AgentFeedClient
from src.domain.models import ConfirmationAction, FollowOptions, MarginType, Position
from src.exceptions import DataError, FollowSystemError
from src.monitoring.logger import get_logger, setup_logging

app = typer.Typer(
    name="copy-follow",
    help="Copy-trading reconciliation and execution planning",
    add_completion=False,
)

logger = get_logger(__name__)

DEFAULT_CONFIG = Path(__file__).parent / "config" / "config.yaml"


def _load(config_path: Path) -> Config:
    config = load_config(str(config_path))
    setup_logging(config.monitoring.log_level, config.monitoring.log_format, config.monitoring.log_file)
    return config


def _read_positions(path: Path) -> List[Position]:
    """
    Positions file: either a list of position objects or the feed's
    ``{"SYMBOL": {...}}`` mapping.
    """
    try:
        data = json.loads(path.read_text())
    except (OSError, json.JSONDecodeError) as e:
        raise DataError(f"Cannot read positions file {path}: {e}") from e
    if isinstance(data, dict) and "positions" in data:
        data = data["positions"]
    if isinstance(data, dict):
        return [Position.from_dict(raw, symbol=symbol) for symbol, raw in data.items()]
    return [Position.from_dict(raw) for raw in data]


async def _source_positions(config: Config, agent_id: str, positions_file: Optional[Path]) -> List[Position]:
    if positions_file is not None:
        return _read_positions(positions_file)
    return await AgentFeedClient(config.feed).get_agent_positions(agent_id)


def _build_broker(config: Config, account_file: Optional[Path], live: bool):
    if live:
        from src.execution.ccxt_broker import CcxtFuturesBroker

        broker = CcxtFuturesBroker(config.exchange)
        if not broker.has_valid_credentials():
            typer.secho("Exchange credentials are not configured", fg=typer.colors.RED)
            raise typer.Exit(1)
        return broker

    from src.paper.paper_broker import PaperBroker

    if account_file is not None and account_file.exists():
        return PaperBroker.from_file(account_file, quote=config.exchange.quote_asset)
    return PaperBroker(quote=config.exchange.quote_asset)


def _build_service(config: Config, broker):
    from src.execution.position_manager import PositionManager
    from src.follow.follow_service import FollowService
    from src.storage.db import init_db
    from src.storage.order_history import SqlOrderHistoryManager

    order_history = SqlOrderHistoryManager(init_db(config.storage.database_url))
    service = FollowService.from_config(
        config,
        position_manager=PositionManager(broker),
        order_history=order_history,
        trading_executor=broker,
    )
    return service, order_history


def _echo_json(data) -> None:
    typer.echo(json.dumps(data, indent=2, default=str))


def _follow_options(total_margin, profit_target, auto_refollow, margin_type, max_leverage, price_tolerance) -> FollowOptions:
    def dec(value: Optional[float]) -> Optional[Decimal]:
        return Decimal(str(value)) if value is not None else None

    return FollowOptions(
        total_margin=dec(total_margin),
        profit_target=dec(profit_target),
        auto_refollow=auto_refollow,
        margin_type=margin_type,
        max_leverage=dec(max_leverage),
        price_tolerance=dec(price_tolerance),
    )


@app.command()
def follow(
    agent_id: str = typer.Argument(..., help="Source agent (model id)"),
    positions_file: Optional[Path] = typer.Option(None, "--positions", help="Source positions JSON (default: fetch from feed)"),
    account_file: Optional[Path] = typer.Option(None, "--account", help="Paper account JSON (updated after --execute)"),
    total_margin: Optional[float] = typer.Option(None, "--total-margin", help="Margin budget in quote asset"),
    profit_target: Optional[float] = typer.Option(None, "--profit", help="Profit target percent"),
    auto_refollow: bool = typer.Option(False, "--auto-refollow", help="Allow refollowing a new epoch after a profit exit"),
    margin_type: Optional[MarginType] = typer.Option(None, "--margin-type", case_sensitive=False),
    max_leverage: Optional[float] = typer.Option(None, "--max-leverage"),
    price_tolerance: Optional[float] = typer.Option(None, "--price-tolerance", help="Entry vs current price tolerance percent"),
    confirm: Optional[ConfirmationAction] = typer.Option(None, "--confirm", help="Resolution for an inconsistent history"),
    execute: bool = typer.Option(False, "--execute", help="Place the planned orders"),
    risk_only: bool = typer.Option(False, "--risk-only", help="Assess risk without placing orders"),
    live: bool = typer.Option(False, "--live", help="Use the configured exchange instead of a paper account"),
    config_path: Path = typer.Option(DEFAULT_CONFIG, "--config", help="Path to config file"),
):
    """
    Run one follow pass for an agent and print the plans.

    Example:
        copy-follow follow qwen3-max --positions positions.json --total-margin 250 --execute
    """
    config = _load(config_path)
    if live and execute and config.system.dry_run and not risk_only:
        logger.warning("DRY_RUN_FORCES_RISK_ONLY", agent_id=agent_id)
        risk_only = True

    options = _follow_options(total_margin, profit_target, auto_refollow, margin_type, max_leverage, price_tolerance)

    async def run_follow() -> int:
        from src.execution.plan_executor import PlanExecutor
        from src.follow.agent_lock import AgentLockRegistry
        from src.follow.outcome import guarded_follow

        broker = _build_broker(config, account_file, live)
        try:
            positions = await _source_positions(config, agent_id, positions_file)
            service, order_history = _build_service(config, broker)
            if confirm is not None:
                service.handle_user_confirmation(agent_id, confirm)

            outcome = await guarded_follow(service, AgentLockRegistry(), agent_id, positions, options)
            if not outcome.ok:
                typer.secho(f"Follow failed: {outcome.error}", fg=typer.colors.RED)
                return 1

            if not (execute or risk_only):
                _echo_json({"agent_id": agent_id, "plans": [p.to_dict() for p in outcome.plans]})
                return 0

            executor = PlanExecutor(broker, service.risk_manager, order_history)
            report = await executor.execute_plans(
                agent_id,
                outcome.plans,
                risk_only=risk_only,
                price_tolerance=options.price_tolerance,
                total_margin=options.total_margin,
            )
            _echo_json(report.to_dict())
            if account_file is not None and not live and execute and not risk_only:
                broker.save(account_file)
            return 0
        finally:
            if live:
                await broker.close()

    try:
        code = asyncio.run(run_follow())
    except FollowSystemError as e:
        logger.error("FOLLOW_COMMAND_FAILED", agent_id=agent_id, error=str(e))
        typer.secho(str(e), fg=typer.colors.RED)
        raise typer.Exit(1)
    if code:
        raise typer.Exit(code)


@app.command()
def watch(
    agent_id: str = typer.Argument(..., help="Source agent (model id)"),
    positions_file: Optional[Path] = typer.Option(None, "--positions", help="Source positions JSON, re-read every pass (default: fetch from feed)"),
    account_file: Optional[Path] = typer.Option(None, "--account", help="Paper account JSON (saved after every pass)"),
    total_margin: Optional[float] = typer.Option(None, "--total-margin", help="Margin budget in quote asset"),
    profit_target: Optional[float] = typer.Option(None, "--profit", help="Profit target percent"),
    auto_refollow: bool = typer.Option(False, "--auto-refollow", help="Allow refollowing a new epoch after a profit exit"),
    margin_type: Optional[MarginType] = typer.Option(None, "--margin-type", case_sensitive=False),
    max_leverage: Optional[float] = typer.Option(None, "--max-leverage"),
    price_tolerance: Optional[float] = typer.Option(None, "--price-tolerance", help="Entry vs current price tolerance percent"),
    confirm: Optional[ConfirmationAction] = typer.Option(None, "--confirm", help="Resolution for an inconsistent history, kept across passes"),
    risk_only: bool = typer.Option(False, "--risk-only", help="Assess risk without placing orders"),
    live: bool = typer.Option(False, "--live", help="Use the configured exchange instead of a paper account"),
    interval: Optional[float] = typer.Option(None, "--interval", min=0.0, help="Seconds between passes (default: follow.poll_interval_seconds)"),
    max_cycles: Optional[int] = typer.Option(None, "--max-cycles", min=1, help="Stop after N passes (default: until interrupted)"),
    config_path: Path = typer.Option(DEFAULT_CONFIG, "--config", help="Path to config file"),
):
    """
    Follow an agent on a timer, executing the plans of every pass.

    Example:
        copy-follow watch qwen3-max --total-margin 250 --interval 30
    """
    config = _load(config_path)
    if live and config.system.dry_run and not risk_only:
        logger.warning("DRY_RUN_FORCES_RISK_ONLY", agent_id=agent_id)
        risk_only = True

    options = _follow_options(total_margin, profit_target, auto_refollow, margin_type, max_leverage, price_tolerance)

    async def run_watch() -> int:
        from src.execution.plan_executor import PlanExecutor
        from src.follow.follow_loop import FollowLoop

        broker = _build_broker(config, account_file, live)
        try:
            service, order_history = _build_service(config, broker)
            if confirm is not None:
                service.handle_user_confirmation(agent_id, confirm)

            def report_cycle(result) -> None:
                if result.report is None:
                    typer.secho(f"cycle {result.cycle}: {result.error}", fg=typer.colors.RED)
                    return
                summary = result.report.summary
                typer.echo(
                    f"cycle {result.cycle}: {summary['total']} plans, {summary['executed']} executed, "
                    f"{summary['blocked']} blocked, {summary['skipped']} skipped"
                )
                if account_file is not None and not live and not risk_only:
                    broker.save(account_file)

            loop = FollowLoop(
                agent_id,
                service,
                PlanExecutor(broker, service.risk_manager, order_history),
                source=lambda: _source_positions(config, agent_id, positions_file),
                options=options,
                interval_seconds=interval if interval is not None else config.follow.poll_interval_seconds,
                max_cycles=max_cycles,
                risk_only=risk_only,
                on_cycle=report_cycle,
            )
            await loop.run()
            return 1 if loop.halted else 0
        finally:
            if live:
                await broker.close()

    try:
        code = asyncio.run(run_watch())
    except KeyboardInterrupt:
        logger.info("WATCH_STOPPED_BY_USER", agent_id=agent_id)
        return
    if code:
        raise typer.Exit(code)


@app.command()
def validate(
    agent_id: str = typer.Argument(..., help="Source agent (model id)"),
    positions_file: Optional[Path] = typer.Option(None, "--positions", help="Source positions JSON (default: fetch from feed)"),
    config_path: Path = typer.Option(DEFAULT_CONFIG, "--config", help="Path to config file"),
):
    """Print the consistency report between the ledger and the source."""
    config = _load(config_path)

    async def run_validate():
        from src.paper.paper_broker import PaperBroker

        positions = await _source_positions(config, agent_id, positions_file)
        service, _ = _build_service(config, PaperBroker(quote=config.exchange.quote_asset))
        result = service.validate_position_consistency(agent_id, positions)
        report = result.to_dict()
        if service.needs_user_confirmation(agent_id, positions):
            info = service.get_confirmation_required_info(agent_id, positions)
            report["confirmation"] = {
                "message": info["message"],
                "options": info["options"],
            }
        return report

    try:
        report = asyncio.run(run_validate())
    except FollowSystemError as e:
        typer.secho(str(e), fg=typer.colors.RED)
        raise typer.Exit(1)
    _echo_json(report)
    if not report["is_valid"]:
        raise typer.Exit(1)


@app.command(name="reset-symbol")
def reset_symbol(
    symbol: str = typer.Argument(..., help="Source symbol (e.g. BTC)"),
    entry_oid: int = typer.Argument(..., help="Entry order id of the exited epoch"),
    config_path: Path = typer.Option(DEFAULT_CONFIG, "--config", help="Path to config file"),
):
    """Release a symbol for refollow after a profit-target exit."""
    from src.storage.db import init_db
    from src.storage.order_history import SqlOrderHistoryManager

    config = _load(config_path)
    try:
        SqlOrderHistoryManager(init_db(config.storage.database_url)).reset_symbol_order_status(symbol, entry_oid)
    except FollowSystemError as e:
        typer.secho(str(e), fg=typer.colors.RED)
        raise typer.Exit(1)
    typer.echo(f"{symbol} (OID {entry_oid}) released for refollow")


@app.command()
def agents(
    config_path: Path = typer.Option(DEFAULT_CONFIG, "--config", help="Path to config file"),
):
    """List the agents in the source feed with their open positions."""
    config = _load(config_path)
    try:
        latest = asyncio.run(AgentFeedClient(config.feed).get_latest_accounts())
    except FollowSystemError as e:
        typer.secho(str(e), fg=typer.colors.RED)
        raise typer.Exit(1)
    for model_id, account in sorted(latest.items()):
        symbols = ", ".join(p.symbol for p in account.positions if p.is_open) or "-"
        typer.echo(f"{model_id:<28} {len(account.positions):>3} positions  {symbols}")


if __name__ == "__main__":
    app()
