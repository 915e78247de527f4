import argparse
import importlib
import signal
from pathlib import Path
from typing import Dict, List, Optional

from . import __version__
from .checkpoint import CheckpointManager
from .config import CUSTOM_QUERY_CRITERIA, ENTITY_TYPES, HandleNamespace, MassIndexingParameters
from .database import init_database
from .env import (
    CHECKPOINT_URL_VAR, DATABASE_URL_VAR, INDEX_NAME_VAR, INDEX_URL_VAR,
    env_default, load_env,
)
from .errors import MassIndexingError
from .index_writer import IndexWriter, InMemoryIndexWriter, OpenSearchIndexWriter
from .job import JobReport, MassIndexingJob, build_report
from .store import EntityRegistry, HandleRegistry, RecordStore

DEFAULT_CHECKPOINT_PATH = Path("data/massindex_checkpoints.db")
DEFAULT_INDEX_NAME = "massindex"


def parse_params(pairs: Optional[List[str]]) -> Dict[str, str]:
    params: Dict[str, str] = {}
    for pair in pairs or []:
        key, sep, value = pair.partition("=")
        if not sep or not key.strip():
            raise SystemExit(f"Invalid --param {pair!r}; expected key=value")
        params[key.strip()] = value.strip()
    return params


def load_entities(models: str, base_name: str = "Base") -> EntityRegistry:
    try:
        module = importlib.import_module(models)
    except ImportError as e:
        raise SystemExit(f"Cannot import models module {models!r}: {e}")
    base = getattr(module, base_name, None)
    if base is None:
        raise SystemExit(f"Module {models!r} has no declarative base named {base_name!r}")
    return EntityRegistry.from_base(base)


def build_writer(args: argparse.Namespace) -> IndexWriter:
    index_url = args.index_url or env_default(INDEX_URL_VAR)
    if not index_url:
        print("[warn] No index URL set; documents are kept in memory only (dry run)")
        return InMemoryIndexWriter()
    index_name = args.index_name or env_default(INDEX_NAME_VAR, DEFAULT_INDEX_NAME)
    return OpenSearchIndexWriter(index_url, index_name)


def checkpoint_manager(args: argparse.Namespace) -> CheckpointManager:
    url = args.checkpoint_url or env_default(CHECKPOINT_URL_VAR)
    return CheckpointManager(init_database(url or DEFAULT_CHECKPOINT_PATH))


def build_job(args: argparse.Namespace, parameters: MassIndexingParameters, checkpoints: CheckpointManager) -> MassIndexingJob:
    database_url = args.database_url or env_default(DATABASE_URL_VAR)
    if not database_url:
        raise SystemExit(f"No record store URL. Pass --database-url or set {DATABASE_URL_VAR}.")

    handles = HandleRegistry()
    handles.register(
        parameters.entity_manager_factory_reference or "default",
        RecordStore.from_url(database_url),
        parameters.entity_manager_factory_namespace or HandleNamespace.PERSISTENCE_UNIT_NAME,
    )
    return MassIndexingJob(
        parameters,
        load_entities(args.models, args.base),
        handles,
        checkpoints,
        build_writer(args),
    )


def run_job(job: MassIndexingJob, action):
    # First Ctrl-C stops at the next chunk boundary; a second one kills the process
    def on_interrupt(signum, frame):
        signal.signal(signal.SIGINT, signal.default_int_handler)
        print("\nStopping after in-flight chunks. Press Ctrl-C again to abort.")
        job.stop()

    previous = signal.signal(signal.SIGINT, on_interrupt)
    try:
        return action()
    except MassIndexingError as e:
        raise SystemExit(f"{type(e).__name__}: {e}")
    finally:
        signal.signal(signal.SIGINT, previous)


def print_report(report: JobReport, verbose: bool = False) -> None:
    print(f"Execution {report.execution_id}: {report.status.value}")
    if report.error:
        print(f"  Error: {report.error}")
    for entity_type, stats in report.by_type().items():
        pct = (stats.read / stats.keys * 100) if stats.keys else 100.0
        print(
            f"  {entity_type}: {stats.read}/{stats.keys} read ({pct:.1f}%), "
            f"indexed={stats.indexed} skipped={stats.skipped} partitions={stats.partitions}"
        )
    if verbose:
        for p in report.partitions:
            line = f"    {p.label}: {p.status.value} chunk={p.last_committed_chunk} read={p.read}/{p.key_count}"
            if p.error:
                line += f" error={p.error}"
            print(line)


def cmd_start(args: argparse.Namespace) -> None:
    raw = parse_params(args.param)
    if args.entity_types:
        raw[ENTITY_TYPES] = args.entity_types
    try:
        parameters = MassIndexingParameters.from_mapping(raw)
    except MassIndexingError as e:
        raise SystemExit(f"Invalid job parameters: {e}")

    job = build_job(args, parameters, checkpoint_manager(args))
    report = run_job(job, job.start)
    print_report(report, args.verbose)
    if report.status.value != "COMPLETED":
        raise SystemExit(1)


def cmd_restart(args: argparse.Namespace) -> None:
    checkpoints = checkpoint_manager(args)
    try:
        state = checkpoints.get_execution(args.execution_id)
    except MassIndexingError as e:
        raise SystemExit(str(e))
    if CUSTOM_QUERY_CRITERIA in state.parameters:
        raise SystemExit(
            f"Execution {state.id} was restricted with {CUSTOM_QUERY_CRITERIA}; "
            f"restart it from code with the same criteria"
        )

    raw = dict(state.parameters)
    raw.update(parse_params(args.param))
    try:
        parameters = MassIndexingParameters.from_mapping(raw)
    except MassIndexingError as e:
        raise SystemExit(f"Invalid job parameters: {e}")

    job = build_job(args, parameters, checkpoints)
    report = run_job(job, lambda: job.restart(state.id))
    print_report(report, args.verbose)
    if report.status.value != "COMPLETED":
        raise SystemExit(1)


def cmd_status(args: argparse.Namespace) -> None:
    checkpoints = checkpoint_manager(args)
    if args.execution_id is not None:
        try:
            print_report(build_report(checkpoints, args.execution_id), verbose=True)
        except MassIndexingError as e:
            raise SystemExit(str(e))
        return

    executions = checkpoints.list_executions()
    if not executions:
        print("No executions recorded.")
        return
    for state in executions:
        print(
            f"{state.id}: {state.status.value} types={','.join(state.entity_types)} "
            f"restarts={state.restart_count}"
        )


def add_connection_args(parser: argparse.ArgumentParser, record_store: bool = True) -> None:
    parser.add_argument("--checkpoint-url", help=f"Checkpoint database URL (or set {CHECKPOINT_URL_VAR})")
    if not record_store:
        return
    parser.add_argument("--models", required=True, help="Module defining the mapped entity classes")
    parser.add_argument("--base", default="Base", help="Declarative base name in --models (default: Base)")
    parser.add_argument("--database-url", help=f"Record store URL (or set {DATABASE_URL_VAR})")
    parser.add_argument("--index-url", help=f"OpenSearch/Elasticsearch URL (or set {INDEX_URL_VAR})")
    parser.add_argument("--index-name", help=f"Index name (or set {INDEX_NAME_VAR})")
    parser.add_argument("--param", action="append", help="Job parameter key=value, e.g. rowsPerPartition=5000")
    parser.add_argument("-v", "--verbose", action="store_true", help="Print every partition")


def main(argv: Optional[List[str]] = None):
    # Load .env if present (MASSINDEX_DATABASE_URL, MASSINDEX_INDEX_URL, etc.)
    load_env()
    parser = argparse.ArgumentParser(prog="massindex", description="Checkpointed, restartable search index rebuilds")
    parser.add_argument("--version", action="store_true", help="Show version")

    subparsers = parser.add_subparsers(dest="command")
    start = subparsers.add_parser("start", help="Start a new mass indexing execution")
    start.add_argument("--entity-types", help="Comma-separated entity types, e.g. Book,Author")
    add_connection_args(start)
    start.set_defaults(func=cmd_start)

    restart = subparsers.add_parser("restart", help="Resume a failed or stopped execution")
    restart.add_argument("--execution-id", type=int, required=True, help="Execution to resume")
    add_connection_args(restart)
    restart.set_defaults(func=cmd_restart)

    status = subparsers.add_parser("status", help="Show executions and their progress")
    status.add_argument("--execution-id", type=int, help="Show one execution in detail")
    add_connection_args(status, record_store=False)
    status.set_defaults(func=cmd_status)

    args = parser.parse_args(argv)

    if args.version:
        print(__version__)
        return

    if hasattr(args, "func"):
        args.func(args)
        return

    parser.print_help()


if __name__ == "__main__":
    main()
