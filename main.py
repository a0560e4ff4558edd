from __future__ import annotations

import argparse
import json
import logging
import signal
import sys
import threading
import time
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any

from sqlalchemy.exc import SQLAlchemyError

from generational.cycle_engine import GenerationalEngine
from generational.errors import ConfigValidationError, DataLoadError, SchemaMismatchError
from generational.validation import CrisisWindow


BASE_DIR = Path(__file__).resolve().parent
DATA_DIR = BASE_DIR / "data"
DEFAULT_CONFIG_PATH = BASE_DIR / "config.json"
LOG_FILE = BASE_DIR / "simulation.log"

CITIZENS_FILE = DATA_DIR / "citizens.json"
LEDGER_FILE = DATA_DIR / "life_history_log.csv"

# Global logger
logger: logging.Logger | None = None


def setup_logging(log_file: Path = LOG_FILE, level: int = logging.INFO) -> logging.Logger:
    """Set up rotating file logging plus console output for the engine loggers."""
    log = logging.getLogger("generational")
    log.setLevel(level)

    # Avoid duplicate handlers
    if log.handlers:
        return log

    # File handler with rotation (10MB max, keep 5 backups)
    file_handler = RotatingFileHandler(
        log_file,
        maxBytes=10 * 1024 * 1024,
        backupCount=5,
        encoding="utf-8",
    )
    file_handler.setLevel(level)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(level)

    formatter = logging.Formatter(
        "%(asctime)s - %(levelname)s - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    file_handler.setFormatter(formatter)
    console_handler.setFormatter(formatter)

    log.addHandler(file_handler)
    log.addHandler(console_handler)

    return log


def load_config(path: Path | None) -> dict[str, Any]:
    """Load configuration from JSON file."""
    if path is None or not path.exists():
        return {}
    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as e:
        print(f"Error: Invalid JSON in config file {path}: {e}", file=sys.stderr)
        sys.exit(1)
    except IOError as e:
        print(f"Error: Cannot read config file {path}: {e}", file=sys.stderr)
        sys.exit(1)


def resolve_value(cli_value: Any, cfg_section: dict[str, Any], key: str, fallback: Any) -> Any:
    """Resolve configuration value with priority: CLI > config file > fallback."""
    if cli_value is not None:
        return cli_value
    if key in cfg_section:
        return cfg_section[key]
    return fallback


def parse_crisis(raw: dict[str, Any] | None) -> CrisisWindow | None:
    """Build the crisis window from a config section, if one is declared."""
    if not raw:
        return None
    try:
        return CrisisWindow(
            name=str(raw["name"]),
            start_cycle=int(raw["start_cycle"]),
            duration_cycles=int(raw["duration_cycles"]),
            kind=str(raw.get("kind", "health")),
            severity=str(raw.get("severity", "HIGH")),
            metadata=dict(raw.get("metadata") or {}),
        )
    except (KeyError, TypeError, ValueError) as e:
        raise ConfigValidationError(f"Invalid crisis section: {e}") from e


def build_engine(
    backend: str,
    seed: int | None,
    engine_config: dict[str, Any] | None = None,
    crisis: CrisisWindow | None = None,
) -> GenerationalEngine:
    """Wire the registry and ledger store for the chosen backend."""
    if backend == "sql":
        from generational.ledger import SqlLedgerStore
        from generational.registry import SqlCitizenRegistry

        registry = SqlCitizenRegistry()
        ledger = SqlLedgerStore()
    else:
        from generational.ledger import CsvLedgerStore
        from generational.registry import JsonCitizenRegistry

        if not CITIZENS_FILE.exists():
            raise DataLoadError(f"Required data file not found: {CITIZENS_FILE}")
        registry = JsonCitizenRegistry(CITIZENS_FILE)
        ledger = CsvLedgerStore(LEDGER_FILE)

    return GenerationalEngine(
        registry=registry,
        ledger=ledger,
        crisis=crisis,
        seed=seed,
        config=engine_config,
    )


def generate_population(count: int, seed: int | None) -> None:
    """Write data/citizens.json with a Faker-generated seed population."""
    from generational.generate_citizens import generate_citizens

    print(f"Generating {count} citizens...")
    citizens = generate_citizens(count=count, seed=seed)
    DATA_DIR.mkdir(parents=True, exist_ok=True)
    CITIZENS_FILE.write_text(json.dumps(citizens, indent=2, ensure_ascii=False) + "\n", encoding="utf-8")
    print(f"Wrote {len(citizens)} citizens to {CITIZENS_FILE}")


def init_database(seed_citizens: bool) -> None:
    """Create tables and optionally load data/citizens.json into them."""
    from generational import db_manager

    if not db_manager.test_connection():
        print("Error: Database connection failed. Check your .env configuration.", file=sys.stderr)
        print("Hint: Set DATABASE_URL or DB_HOST, DB_PORT, DB_NAME, DB_USER, DB_PASSWORD.", file=sys.stderr)
        sys.exit(1)

    tables = db_manager.create_tables()
    print(f"Tables ready: {', '.join(tables)}")

    if seed_citizens:
        from generational.registry import load_json

        records = load_json(CITIZENS_FILE)
        inserted = db_manager.insert_citizens(records)
        print(f"Seeded {inserted} citizens from {CITIZENS_FILE}")


def run_single_cycle(
    cycle: int,
    backend: str,
    seed: int | None,
    engine_config: dict[str, Any] | None = None,
    crisis: CrisisWindow | None = None,
) -> None:
    """Run one cycle and print the report summary."""
    global logger
    logger = setup_logging()

    engine = build_engine(backend, seed, engine_config, crisis)
    result = engine.run_cycle(cycle)

    report = result.report
    print(f"Cycle {cycle}: {len(result.events)} events, {len(result.transitions)} transitions")
    print(f"  Ledger rows written: {result.rows_written}")
    print(f"  Citizens updated: {result.citizens_updated}")
    print(f"  Validation: {report.overall_status} ({len(report.findings)} findings)")
    for finding in report.findings:
        print(f"    [{finding.severity.value}] {finding.validator}: {finding.message}")


def resolve_start_cycle(start_cycle: int, resume: bool) -> int:
    """Continue after the last completed cycle stored in the database."""
    if not resume:
        return start_cycle
    from generational import db_manager

    if not db_manager.test_connection():
        logger.warning("Database not reachable; cannot resume. Starting from --start-cycle.")
        return start_cycle
    state = db_manager.load_cycle_state()
    if state:
        logger.info(f"Resuming after cycle {state['last_cycle']} (status '{state['status']}')")
        return int(state["last_cycle"]) + 1
    logger.info("No saved cycle state found. Starting fresh.")
    return start_cycle


def run_simulation(
    cycles: int,
    start_cycle: int,
    backend: str,
    seed: int | None,
    resume: bool = False,
    interval: float = 0.0,
    engine_config: dict[str, Any] | None = None,
    crisis: CrisisWindow | None = None,
    api_enabled: bool = False,
    api_host: str = "127.0.0.1",
    api_port: int = 8020,
) -> None:
    """Run consecutive cycles; optionally serve the live API while running."""
    global logger
    logger = setup_logging()

    if cycles <= 0:
        print(f"Error: cycles must be positive, got {cycles}", file=sys.stderr)
        sys.exit(1)

    first = resolve_start_cycle(start_cycle, resume)
    engine = build_engine(backend, seed, engine_config, crisis)

    stop = threading.Event()

    def handle_shutdown(signum, frame):
        logger.info(f"Received signal {signum}. Stopping after the current cycle...")
        stop.set()

    signal.signal(signal.SIGTERM, handle_shutdown)
    signal.signal(signal.SIGINT, handle_shutdown)

    # Live API in a daemon thread (read-only)
    if api_enabled:
        import uvicorn

        from generational.api import create_app

        app = create_app(engine)
        thread = threading.Thread(
            target=uvicorn.run,
            kwargs={"app": app, "host": api_host, "port": api_port},
            daemon=True,
        )
        thread.start()
        logger.info(f"  API: http://{api_host}:{api_port} (GET /status, /cycles/latest, /citizens/{{id}})")

    save_state = None
    if backend == "sql" or resume:
        from generational import db_manager

        if db_manager.test_connection():
            save_state = db_manager.save_cycle_state
        else:
            logger.warning("Database not reachable; cycle state will not be saved.")

    logger.info(f"Running cycles {first}..{first + cycles - 1} (backend: {backend}, seed: {engine.base_seed})")
    last_done = None
    for cycle in range(first, first + cycles):
        if stop.is_set():
            break
        engine.run_cycle(cycle)
        last_done = cycle
        if save_state is not None:
            save_state(cycle, status="running")
        if interval > 0:
            stop.wait(interval)

    if save_state is not None and last_done is not None:
        save_state(last_done, status="stopped")
    logger.info(f"Simulation stopped after cycle {last_done}")

    if api_enabled and not stop.is_set():
        logger.info("Cycles complete. API still serving; press Ctrl+C to stop.")
        while not stop.is_set():
            time.sleep(1)


def main() -> int:
    parser = argparse.ArgumentParser(
        description="Generational events engine CLI",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Commands:
  generate     Generate the seed population (data/citizens.json)
  init-db      Create the citizens, life_history_log and cycle_state tables
  run-cycle    Run a single cycle
  simulate     Run consecutive cycles, optionally serving the live API

Examples:
  python main.py generate --count 200 --seed 42
  python main.py run-cycle --cycle 10 --seed 42
  python main.py init-db --seed-citizens
  python main.py simulate --cycles 52 --backend sql --resume --api
        """
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Path to config file (default: ./config.json if present).",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    gen = sub.add_parser("generate", help="Generate the seed population")
    gen.add_argument("--count", type=int, default=None, help="Number of citizens (default: 200).")
    gen.add_argument("--seed", type=int, default=None, help="Seed for the generator.")

    initdb = sub.add_parser("init-db", help="Create database tables")
    initdb.add_argument(
        "--seed-citizens",
        action="store_true",
        help="Insert data/citizens.json into the citizens table.",
    )

    one = sub.add_parser("run-cycle", help="Run a single cycle")
    one.add_argument("--cycle", type=int, required=True, help="Absolute cycle number.")
    one.add_argument("--backend", choices=["json", "sql"], default=None, help="Registry/ledger backend.")
    one.add_argument("--seed", type=int, default=None, help="Base RNG seed.")

    sim = sub.add_parser("simulate", help="Run consecutive cycles")
    sim.add_argument("--cycles", type=int, default=None, help="Number of cycles to run.")
    sim.add_argument("--start-cycle", type=int, default=None, help="First cycle (default: 1).")
    sim.add_argument("--backend", choices=["json", "sql"], default=None, help="Registry/ledger backend.")
    sim.add_argument("--seed", type=int, default=None, help="Base RNG seed.")
    sim.add_argument("--interval", type=float, default=None, help="Seconds between cycles (default: 0).")
    sim.add_argument("--resume", action="store_true", help="Continue after the last cycle saved in the database.")
    sim.add_argument("--api", action="store_true", help="Serve the read-only API while running.")

    args = parser.parse_args()
    config_path = args.config or (DEFAULT_CONFIG_PATH if DEFAULT_CONFIG_PATH.exists() else None)
    config = load_config(config_path)

    try:
        if args.command == "generate":
            section = config.get("generate", {})
            count = resolve_value(args.count, section, "count", 200)
            seed = resolve_value(args.seed, section, "seed", 42)
            generate_population(count=count, seed=seed)
            return 0

        if args.command == "init-db":
            init_database(seed_citizens=args.seed_citizens)
            return 0

        if args.command == "run-cycle":
            section = config.get("run-cycle", {})
            run_single_cycle(
                cycle=args.cycle,
                backend=resolve_value(args.backend, section, "backend", "json"),
                seed=resolve_value(args.seed, section, "seed", None),
                engine_config=section.get("engine", {}),
                crisis=parse_crisis(section.get("crisis")),
            )
            return 0

        if args.command == "simulate":
            section = config.get("simulate", {})
            run_simulation(
                cycles=resolve_value(args.cycles, section, "cycles", 52),
                start_cycle=resolve_value(args.start_cycle, section, "start_cycle", 1),
                backend=resolve_value(args.backend, section, "backend", "json"),
                seed=resolve_value(args.seed, section, "seed", None),
                resume=args.resume or bool(section.get("resume", False)),
                interval=resolve_value(args.interval, section, "interval", 0.0),
                engine_config=section.get("engine", {}),
                crisis=parse_crisis(section.get("crisis")),
                api_enabled=args.api or bool(section.get("api_enabled", False)),
                api_host=section.get("api_host", "127.0.0.1"),
                api_port=section.get("api_port", 8020),
            )
            return 0
    except DataLoadError as e:
        print(f"Error loading data: {e}", file=sys.stderr)
        print("Hint: Run 'python main.py generate' first to create data files.", file=sys.stderr)
        return 1
    except ConfigValidationError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return 1
    except SchemaMismatchError as e:
        print(f"Ledger schema error: {e}", file=sys.stderr)
        print("No events were written and no citizen was updated.", file=sys.stderr)
        return 1
    except SQLAlchemyError as e:
        print(f"Database error: {e}", file=sys.stderr)
        return 1
    except ValueError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    return 1


if __name__ == "__main__":
    raise SystemExit(main())
