from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path

from .app_logging import log_with_fields, setup_logger
from .backend import build_backend
from .blobs import BlobStore
from .config import AppConfig, DebugClusterConfig, ensure_local_paths, load_config
from .dispatcher import Dispatcher
from .errors import ClientError, CrackpoolError, NoCapacityError
from .models import CrackJob
from .service import ROOT_PRINCIPAL, CrackService
from .store import Store
from .wordlists import WordlistStore
from .worker import WorkerAgent, dictionary_attack


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="crackpool", description="Wordlist store and cracking job dispatcher")
    parser.add_argument("--config", required=True, help="Path to crackpool YAML config")
    subparsers = parser.add_subparsers(dest="command", required=True)

    upload = subparsers.add_parser("upload", help="Store a wordlist file")
    upload.add_argument("path", help="Wordlist file to upload")
    upload.add_argument("--name", help="Display name (defaults to the file name)")

    subparsers.add_parser("wordlists", help="List stored wordlists")

    remove = subparsers.add_parser("remove-wordlist", help="Delete a stored wordlist")
    remove.add_argument("wordlist", help="Checksum or storage key")

    subparsers.add_parser("workers", help="Discover workers in the active cluster")

    submit = subparsers.add_parser("submit", help="Submit a cracking job")
    submit.add_argument("--wordlist", required=True, help="Checksum or storage key of the wordlist")
    submit.add_argument("--hash", dest="hashes", action="append", default=[], help="Hash to crack (repeatable)")
    submit.add_argument("--hash-file", help="File with one hash per line")
    submit.add_argument("--hash-type", type=int, default=0, help="hashcat mode number")
    submit.add_argument("--worker", help="Preferred worker id or tag")
    submit.add_argument("--job-id", help="Idempotency key for the job")

    cancel = subparsers.add_parser("cancel", help="Cancel a job")
    cancel.add_argument("job_id", help="Job id to cancel")

    status = subparsers.add_parser("status", help="Show job counts, or one job in detail")
    status.add_argument("--job-id", help="Job id to show")

    subparsers.add_parser("sync", help="Poll dispatched jobs once and record their status")

    run_parser = subparsers.add_parser("run", help="Run dispatcher polling loop")
    run_parser.add_argument(
        "--once",
        action="store_true",
        help="Run one polling cycle, then exit",
    )

    sweep = subparsers.add_parser("sweep", help="Delete blobs no wordlist references")
    sweep.add_argument(
        "--grace-seconds",
        type=float,
        default=3600,
        help="Keep staged uploads younger than this",
    )

    worker = subparsers.add_parser("worker", help="Run a worker agent on the shared cluster root")
    worker.add_argument("--id", dest="worker_id", required=True, help="Worker id to register as")
    worker.add_argument("--address", help="Address advertised to the dispatcher")
    worker.add_argument("--tag", dest="tags", action="append", default=[], help="Worker tag (repeatable)")
    worker.add_argument("--interval", type=float, default=5.0, help="Seconds between polls")
    worker.add_argument("--once", action="store_true", help="Heartbeat and run pending jobs once, then exit")
    return parser


def _open_runtime(config: AppConfig) -> tuple[Store, CrackService]:
    ensure_local_paths(config)
    logger = setup_logger(config.paths.log)
    store = Store(config.paths.db)
    store.init_schema()
    blobs = BlobStore(config.paths.blobs, read_retries=config.store.read_retries)
    wordlists = WordlistStore(
        store,
        blobs,
        duplicate_policy=config.store.duplicate_policy,
        chunk_size=config.store.chunk_size,
        logger=logger.getChild("wordlists"),
    )
    overrides: dict[str, object] = {}
    if isinstance(config.cluster, DebugClusterConfig):
        overrides["runner"] = lambda job: dictionary_attack(
            job.hashes, job.hash_type, wordlists.path_of(job.wordlist_checksum)
        )
    backend = build_backend(
        config.cluster,
        wordlist_path=lambda checksum: str(wordlists.path_of(checksum)),
        logger=logger.getChild(config.cluster.type),
        **overrides,
    )
    dispatcher = Dispatcher(store, wordlists, backend, config.dispatch, logger.getChild("dispatcher"))
    return store, CrackService(wordlists, dispatcher, backend, logger=logger.getChild("service"))


def _print_job(job: CrackJob) -> None:
    print(f"{job.job_id}: state={job.state.value} worker={job.worker_id} attempts={job.attempt_count}")
    if job.reason:
        print(f"  reason: {job.reason}")
    for digest, plaintext in sorted((job.result or {}).items()):
        print(f"  {digest}:{plaintext}")


def cmd_upload(service: CrackService, path: Path, name: str | None) -> int:
    with path.open("rb") as handle:
        checksum = service.upload_wordlist(ROOT_PRINCIPAL, handle, name or path.name)
    print(checksum)
    return 0


def cmd_wordlists(service: CrackService) -> int:
    records = service.list_wordlists(ROOT_PRINCIPAL)
    if not records:
        print("(no wordlists)")
    for record in records:
        print(f"{record.checksum}  {record.size:>12}  {record.created_at}  {record.name}")
    return 0


def cmd_remove_wordlist(service: CrackService, identifier: str) -> int:
    record = service.remove_wordlist(ROOT_PRINCIPAL, identifier)
    print(f"removed {record.checksum}")
    return 0


def cmd_workers(service: CrackService) -> int:
    workers = service.list_workers(ROOT_PRINCIPAL)
    if not workers:
        print("(no workers)")
    for worker in workers:
        tags = ",".join(worker.tags) or "-"
        print(f"  {worker.worker_id}: health={worker.health.value} address={worker.address} tags={tags} seen={worker.last_seen}")
    return 0


def _read_hashes(hashes: list[str], hash_file: str | None) -> list[str]:
    output = list(hashes)
    if hash_file:
        output.extend(Path(hash_file).read_text(encoding="utf-8").splitlines())
    return output


def cmd_submit(service: CrackService, args: argparse.Namespace) -> int:
    try:
        job = service.submit_job(
            ROOT_PRINCIPAL,
            _read_hashes(args.hashes, args.hash_file),
            args.wordlist,
            job_id=args.job_id,
            hash_type=args.hash_type,
            worker_hint=args.worker,
        )
    except NoCapacityError as exc:
        print(str(exc), file=sys.stderr)
        return 1
    # Debug jobs finish in-process, so pick up their result before exiting.
    service.dispatcher.sync()
    _print_job(service.get_job(ROOT_PRINCIPAL, job.job_id))
    return 0


def cmd_cancel(service: CrackService, job_id: str) -> int:
    _print_job(service.cancel_job(ROOT_PRINCIPAL, job_id))
    return 0


def cmd_status(store: Store, service: CrackService, job_id: str | None) -> int:
    if job_id:
        _print_job(service.get_job(ROOT_PRINCIPAL, job_id))
        for event in store.list_events(job_id):
            details = json.dumps(event["details"], sort_keys=True)
            print(f"  {event['timestamp']} {event['event_type']} worker={event['worker_id']} {details}")
        return 0

    status = service.cluster_status(ROOT_PRINCIPAL)
    print(f"Cluster: {status['backend']}")
    print("Workers:")
    for health, count in status["workers"].items():
        print(f"  {health:12} {count}")
    print("Jobs:")
    for state, count in status["jobs"].items():
        print(f"  {state:12} {count}")
    print(f"\nWordlists: {status['wordlists']}")
    return 0


def cmd_run(service: CrackService, *, once: bool = False) -> int:
    try:
        if once:
            service.dispatcher.run_once()
            return 0
        service.dispatcher.run_forever()
    except KeyboardInterrupt:
        log_with_fields(logging.getLogger("crackpool"), logging.INFO, "shutdown", reason="keyboard_interrupt")
    return 0


def cmd_worker(config: AppConfig, args: argparse.Namespace) -> int:
    root = getattr(config.cluster, "root", None)
    if root is None:
        print(f"cluster type {config.cluster.type} has no shared root for workers", file=sys.stderr)
        return 2
    ensure_local_paths(config)
    logger = setup_logger(config.paths.log)
    agent = WorkerAgent(
        root,
        args.worker_id,
        address=args.address,
        tags=tuple(args.tags),
        logger=logger.getChild("worker"),
    )
    if args.once:
        ran = agent.poll_once()
        print(f"ran {ran} job(s)")
        return 0
    try:
        agent.run_forever(args.interval)
    except KeyboardInterrupt:
        log_with_fields(logger, logging.INFO, "shutdown", reason="keyboard_interrupt", worker=args.worker_id)
    return 0


def _run_command(store: Store, service: CrackService, args: argparse.Namespace) -> int:
    if args.command == "upload":
        return cmd_upload(service, Path(args.path), args.name)
    if args.command == "wordlists":
        return cmd_wordlists(service)
    if args.command == "remove-wordlist":
        return cmd_remove_wordlist(service, args.wordlist)
    if args.command == "workers":
        return cmd_workers(service)
    if args.command == "submit":
        return cmd_submit(service, args)
    if args.command == "cancel":
        return cmd_cancel(service, args.job_id)
    if args.command == "status":
        return cmd_status(store, service, args.job_id)
    if args.command == "sync":
        print(f"updated {service.dispatcher.sync()} job(s)")
        return 0
    if args.command == "run":
        return cmd_run(service, once=bool(args.once))
    if args.command == "sweep":
        removed = service.wordlists.sweep_orphans(staging_grace_seconds=args.grace_seconds)
        for key in removed:
            print(f"removed {key}")
        return 0
    raise ValueError(f"Unknown command: {args.command}")


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    config = load_config(args.config)

    if args.command == "worker":
        return cmd_worker(config, args)

    store, service = _open_runtime(config)
    try:
        return _run_command(store, service, args)
    except (ClientError, ValueError) as exc:
        print(str(exc), file=sys.stderr)
        return 2
    except CrackpoolError as exc:
        print(str(exc), file=sys.stderr)
        return 1
    finally:
        store.close()


if __name__ == "__main__":
    raise SystemExit(main())
