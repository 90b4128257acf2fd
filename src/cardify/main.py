import logging
import sys
import uuid
from datetime import datetime
from pathlib import Path

from cardify.application.config import AppConfig
from cardify.application.factory import open_context
from cardify.application.sync.reconciler import SyncReport


def level_for_verbosity(verbose: int) -> int:
    if verbose <= 0:
        return logging.WARNING
    if verbose == 1:
        return logging.INFO
    return logging.DEBUG


def setup_logging(log_dir: Path, verbose: int = 1) -> tuple[logging.Logger, Path, str]:
    """
    Configure the `cardify` logger for one run.

    Console output goes to stderr at the verbosity-derived level; a per-run
    file in `log_dir` always captures DEBUG.

    Returns:
        (logger, log_file, run_id)
    """
    run_id = f"{datetime.now():%Y%m%d-%H%M%S}-{uuid.uuid4().hex[:6]}"
    log_dir.mkdir(parents=True, exist_ok=True)
    log_file = log_dir / f"run_{run_id}.log"

    logger = logging.getLogger("cardify")
    logger.setLevel(logging.DEBUG)
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    console = logging.StreamHandler(sys.stderr)
    console.setLevel(level_for_verbosity(verbose))
    console.setFormatter(logging.Formatter("%(levelname)s:%(name)s:%(message)s"))
    logger.addHandler(console)

    file_handler = logging.FileHandler(log_file, encoding="utf-8")
    file_handler.setLevel(logging.DEBUG)
    file_handler.setFormatter(
        logging.Formatter(f"%(asctime)s [{run_id}] %(levelname)s %(name)s: %(message)s")
    )
    logger.addHandler(file_handler)
    logger.propagate = False

    return logger, log_file, run_id


async def execute_sync(config: AppConfig, pull: bool = True) -> SyncReport:
    """Run one reconciliation cycle against the configured remote."""
    ctx = await open_context(config)
    try:
        return await ctx.reconciler.run_cycle(pull=pull)
    finally:
        await ctx.close()


async def run_sync_logic(config: AppConfig, pull: bool = True) -> SyncReport:
    logger, log_file, run_id = setup_logging(config.log_dir, config.verbose)
    logger.info(f"=== cardify sync {run_id} ===")
    logger.debug(f"db={config.db_path} api={config.api_base_url} log={log_file}")

    report = await execute_sync(config, pull=pull)

    if report.skipped_reason:
        logger.warning(f"Sync skipped: {report.skipped_reason}")
    else:
        logger.info(
            f"Sync finished: acked={report.acked} retried={report.retried} "
            f"dead_lettered={len(report.dead_lettered)} pulled={report.pulled}"
        )
    return report
