#!/usr/bin/env python3
"""Command-line interface for LotSync.

This module provides CLI commands for inspecting and replaying the offline
mutation queue, resolving sync conflicts and retrying capture uploads.
Uses only core/ modules - no Textual/Flask dependencies.

Commands:
    status                  Show queue counters and backend settings
    queue                   List queued mutations
    enqueue <type> <table> <record_id>
                            Apply a local change, or queue it while offline
    remove <id>             Remove a mutation from the queue
    conflicts               List mutations waiting for conflict resolution
    show-conflict <id>      Show the field analysis of a conflict
    resolve <id> <choice>   Resolve a conflict (local, server, merge)
    sync                    Replay the queue against the backend
    retry-failed            Re-queue mutations that exhausted their attempts
    clear-queue             Remove every queued mutation
    upload <session> <seq> <image>
                            Back up and upload a capture image
    uploads                 List backed-up uploads waiting for retry
    retry-uploads           Retry failed uploads
    clear-uploads           Delete every upload backup
"""

from __future__ import annotations

import argparse
import base64
import json
import mimetypes
import sys
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

from lotsync.core.background import BackgroundSync
from lotsync.core.backend import BackendClient, BackendError, OfflineError
from lotsync.core.config import Config
from lotsync.core.conflicts import (
    analysis_to_dict,
    format_value_for_display,
    get_diff_preview,
)
from lotsync.core.models import MutationStatus, PendingUpload, QueuedMutation
from lotsync.core.mutations import OfflineMutator
from lotsync.core.resolution import ConflictResolutionSession
from lotsync.core.store import KeyValueStore, open_store
from lotsync.core.sync_queue import SyncQueue
from lotsync.core.uploads import UploadRetry
from lotsync.core.validation import ValidationError, mutation_to_dict, upload_to_dict


def parse_json_argument(value: Optional[str], field: str) -> Optional[Dict[str, Any]]:
    """Parse a JSON object given on the command line."""
    if value is None:
        return None
    try:
        parsed = json.loads(value)
    except json.JSONDecodeError as e:
        raise ValidationError(field, f"is not valid JSON ({e.msg})")
    if not isinstance(parsed, dict):
        raise ValidationError(field, "must be a JSON object")
    return parsed


def parse_field_choices(items: Optional[List[str]]) -> Dict[str, str]:
    """Parse repeated `--field name=local|server` options."""
    choices: Dict[str, str] = {}
    for item in items or []:
        name, sep, side = item.partition("=")
        if not sep or not name.strip():
            raise ValidationError("field", f"expected name=local|server, got '{item}'")
        choices[name.strip()] = side.strip()
    return choices


def format_timestamp(value: float) -> str:
    return datetime.fromtimestamp(value).isoformat(sep=" ", timespec="seconds")


def format_mutation(mutation: QueuedMutation) -> str:
    """One-line summary of a queued mutation."""
    line = (
        f"[{mutation.id[:8]}] {mutation.type.value:<6} "
        f"{mutation.table}/{mutation.record_id} "
        f"({mutation.status.value}, attempts: {mutation.attempts})"
    )
    if mutation.last_error:
        line += f" - {mutation.last_error}"
    return line


def open_queue(config: Config, store: KeyValueStore) -> SyncQueue:
    """Open the sync queue with connectivity taken from the configured backend."""
    backend = BackendClient.from_config(config)
    is_online = backend.is_reachable if backend else (lambda: False)
    max_attempts = int(config.get_sync_config().get("max_attempts", 3))
    return SyncQueue(
        store,
        is_online=is_online,
        max_attempts=max_attempts,
        skip_fields=config.get_skip_fields(),
    )


def require_mutation(queue: SyncQueue, mutation_id: str) -> Optional[QueuedMutation]:
    """Look up a mutation by ID or prefix, printing an error if absent."""
    mutation = queue.find_mutation(mutation_id)
    if mutation is None:
        print(f"Error: Mutation {mutation_id} not found", file=sys.stderr)
    return mutation


def cmd_status(queue: SyncQueue, config: Config, args: argparse.Namespace) -> int:
    """Show queue counters and backend settings.

    Args:
        queue: SyncQueue instance
        config: Config instance
        args: Parsed command-line arguments

    Returns:
        Exit code (0 for success)
    """
    status = queue.refresh_status()
    backend_url = config.get_backend_url()

    if args.format == "json":
        print(json.dumps({
            "device_name": config.get_device_name(),
            "backend_url": backend_url,
            "store_backend": config.get("store_backend"),
            "pending": status.pending_count,
            "failed": status.failed_count,
            "conflicts": status.conflict_count,
        }, indent=2))
    else:
        print(f"Device Name: {config.get_device_name()}")
        print(f"Backend: {backend_url or '(not configured)'}")
        print(f"Store: {config.get('store_backend')}")
        print(f"Pending: {status.pending_count}")
        print(f"Failed: {status.failed_count}")
        print(f"Conflicts: {status.conflict_count}")

    return 0


def cmd_queue(queue: SyncQueue, args: argparse.Namespace) -> int:
    """List queued mutations, optionally filtered by status.

    Args:
        queue: SyncQueue instance
        args: Parsed command-line arguments

    Returns:
        Exit code (0 for success)
    """
    mutations = queue.get_all_mutations()
    if args.status:
        wanted = MutationStatus(args.status)
        mutations = [m for m in mutations if m.status == wanted]

    if args.format == "json":
        print(json.dumps([mutation_to_dict(m) for m in mutations], indent=2, ensure_ascii=False))
        return 0

    if not mutations:
        print("Queue is empty.")
        return 0

    for mutation in mutations:
        print(format_mutation(mutation))
    return 0


def cmd_enqueue(queue: SyncQueue, config: Config, args: argparse.Namespace) -> int:
    """Write a local change, applying it online or queueing it for sync.

    Args:
        queue: SyncQueue instance
        config: Config instance
        args: Parsed command-line arguments

    Returns:
        Exit code (0 for success, 1 for error)
    """
    data = parse_json_argument(args.data, "data") or {}
    original = parse_json_argument(args.original, "original")

    mutator = OfflineMutator(
        queue,
        BackendClient.from_config(config),
        queue.is_online,
        policy=config.get_retry_policy(),
    )
    try:
        outcome = mutator.mutate(
            args.type, args.table, data,
            record_id=args.record_id, original_data=original, user_id=args.user,
        )
    except BackendError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    if args.format == "json":
        print(json.dumps({
            "id": outcome.mutation_id,
            "queued": outcome.queued,
            "data": outcome.data,
        }))
    elif outcome.queued:
        print(f"Queued mutation {outcome.mutation_id}")
    else:
        print(f"Applied {args.type.upper()} {args.table}/{args.record_id}")
    return 0


def cmd_remove(queue: SyncQueue, args: argparse.Namespace) -> int:
    """Remove a mutation from the queue."""
    mutation = require_mutation(queue, args.mutation_id)
    if mutation is None:
        return 1
    queue.remove_mutation(mutation.id)
    print(f"Removed mutation {mutation.id}")
    return 0


def cmd_conflicts(queue: SyncQueue, config: Config, args: argparse.Namespace) -> int:
    """List mutations waiting for conflict resolution.

    Args:
        queue: SyncQueue instance
        config: Config instance
        args: Parsed command-line arguments

    Returns:
        Exit code (0 for success)
    """
    conflicts = queue.get_conflicts()

    if args.format == "json":
        output = []
        for mutation in conflicts:
            session = ConflictResolutionSession(
                [mutation], lambda *a: None, skip_fields=config.get_skip_fields()
            )
            output.append({
                "id": mutation.id,
                "type": mutation.type.value,
                "table": mutation.table,
                "recordId": mutation.record_id,
                "fields": session.analysis.conflict_fields,
            })
        print(json.dumps(output, indent=2))
        return 0

    if not conflicts:
        print("No unresolved conflicts.")
        return 0

    print(f"Unresolved Conflicts ({len(conflicts)}):\n")
    for mutation in conflicts:
        session = ConflictResolutionSession(
            [mutation], lambda *a: None, skip_fields=config.get_skip_fields()
        )
        fields = ", ".join(session.analysis.conflict_fields) or "(none)"
        print(f"  [{mutation.id[:8]}] {mutation.table}/{mutation.record_id} - {fields}")
    return 0


def cmd_show_conflict(queue: SyncQueue, config: Config, args: argparse.Namespace) -> int:
    """Show the field analysis of one conflict.

    Args:
        queue: SyncQueue instance
        config: Config instance
        args: Parsed command-line arguments

    Returns:
        Exit code (0 for success, 1 for error)
    """
    mutation = require_mutation(queue, args.mutation_id)
    if mutation is None:
        return 1
    if mutation.status != MutationStatus.CONFLICT:
        print(f"Error: Mutation {mutation.id} is not in conflict", file=sys.stderr)
        return 1

    session = ConflictResolutionSession(
        [mutation], lambda *a: None, skip_fields=config.get_skip_fields()
    )
    analysis = session.analysis

    if args.format == "json":
        output = analysis_to_dict(analysis)
        output["id"] = mutation.id
        print(json.dumps(output, indent=2, ensure_ascii=False))
        return 0

    print(f"Conflict {mutation.id}")
    print(f"Record: {mutation.table}/{mutation.record_id} ({mutation.type.value})")
    print(f"Queued: {format_timestamp(mutation.created_at)}")

    if args.unified:
        print()
        print(get_diff_preview(analysis) or "(no differences)")
        return 0

    print(f"\nConflicting Fields ({len(analysis.conflicts)}):")
    for conflict in analysis.conflicts:
        print(f"  {conflict.field}")
        print(f"    original: {format_value_for_display(conflict.original_value)}")
        print(f"    local:    {format_value_for_display(conflict.local_value)}")
        print(f"    server:   {format_value_for_display(conflict.server_value)}")

    if analysis.auto_mergeable:
        print(f"\nAuto-merged Fields ({len(analysis.auto_mergeable)}):")
        for item in analysis.auto_mergeable:
            value = item.local_value if item.resolution.value == "local" else item.server_value
            print(f"  {item.field}: {format_value_for_display(value)} ({item.resolution.value})")

    return 0


def cmd_resolve(queue: SyncQueue, config: Config, args: argparse.Namespace) -> int:
    """Resolve a conflict.

    Args:
        queue: SyncQueue instance
        config: Config instance
        args: Parsed command-line arguments

    Returns:
        Exit code (0 for success, 1 for error)
    """
    mutation = require_mutation(queue, args.mutation_id)
    if mutation is None:
        return 1
    if mutation.status != MutationStatus.CONFLICT:
        print(f"Error: Mutation {mutation.id} is not in conflict", file=sys.stderr)
        return 1

    session = ConflictResolutionSession(
        [mutation], queue.resolve_conflict, skip_fields=config.get_skip_fields()
    )

    if args.choice == "merge":
        for field, side in parse_field_choices(args.fields).items():
            session.set_field_resolution(field, side)
        session.merge()
    elif args.choice == "local":
        session.keep_local()
    else:
        session.keep_server()

    print(f"Resolved conflict {mutation.id} with {args.choice}")
    return 0


def cmd_sync(queue: SyncQueue, config: Config, args: argparse.Namespace) -> int:
    """Replay the queue against the configured backend.

    Args:
        queue: SyncQueue instance
        config: Config instance
        args: Parsed command-line arguments

    Returns:
        Exit code (0 if nothing failed, 1 otherwise)
    """
    backend = BackendClient.from_config(config)
    if backend is None:
        print("Error: No backend configured (set backend_url in config.json)", file=sys.stderr)
        return 1

    sync = BackgroundSync(queue, backend.execute_mutation, backend.is_reachable)
    try:
        result = sync.force_sync()
    except OfflineError:
        print(f"Error: Backend {backend.base_url} is unreachable", file=sys.stderr)
        return 1

    if args.format == "json":
        print(json.dumps({
            "success": result.success,
            "failed": result.failed,
            "conflicts": result.conflicts,
        }, indent=2))
    else:
        print(f"Synced: {result.success}")
        print(f"Failed: {result.failed}")
        print(f"Conflicts: {result.conflicts}")
        if result.conflicts:
            print("\nRun 'conflicts' to review them.")

    return 0 if result.failed == 0 else 1


def cmd_retry_failed(queue: SyncQueue, args: argparse.Namespace) -> int:
    """Re-queue mutations that exhausted their attempts."""
    count = queue.retry_failed()
    print(f"Re-queued {count} failed mutation(s)")
    return 0


def cmd_clear_queue(queue: SyncQueue, args: argparse.Namespace) -> int:
    """Remove every queued mutation."""
    if not args.yes:
        print("Error: clear-queue discards unsynced changes; pass --yes to confirm", file=sys.stderr)
        return 1
    queue.clear_queue()
    print("Queue cleared")
    return 0


def encode_image_file(path: Path) -> str:
    """Read an image file into a base64 data URL."""
    try:
        content = path.read_bytes()
    except OSError as e:
        raise ValidationError("image", f"cannot read {path} ({e.strerror})")
    content_type = mimetypes.guess_type(path.name)[0] or "image/jpeg"
    return f"data:{content_type};base64,{base64.b64encode(content).decode('ascii')}"


def format_upload(upload: PendingUpload) -> str:
    """One-line summary of a backed-up upload."""
    line = (
        f"[{upload.id[:8]}] {upload.session_id}/{upload.capture_sequence} "
        f"({upload.status.value}, retries: {upload.retry_count})"
    )
    if upload.last_error:
        line += f" - {upload.last_error}"
    return line


def cmd_upload(uploads: UploadRetry, config: Config, args: argparse.Namespace) -> int:
    """Back up a capture image and upload it, keeping it for retry on failure.

    Args:
        uploads: UploadRetry instance
        config: Config instance
        args: Parsed command-line arguments

    Returns:
        Exit code (0 for success, 1 for error)
    """
    payload = encode_image_file(args.image)
    backup_id = uploads.backup_before_upload(args.session_id, args.sequence, args.user, payload)

    backend = BackendClient.from_config(config)
    if backend is not None and backend.is_reachable():
        if backend.upload_capture(uploads.get_upload(backup_id)):
            uploads.mark_upload_success(backup_id)
            print(f"Uploaded capture {args.session_id}/{args.sequence}")
            return 0
        uploads.mark_upload_failed(backup_id, "Upload rejected by backend")
    else:
        uploads.mark_upload_failed(backup_id, "Backend unreachable")

    print(f"Upload saved for retry {backup_id}")
    return 0


def cmd_uploads(uploads: UploadRetry, args: argparse.Namespace) -> int:
    """List backed-up uploads waiting for retry."""
    pending = uploads.get_pending_uploads()

    if args.format == "json":
        output = []
        for upload in pending:
            item = upload_to_dict(upload)
            del item["payload"]
            output.append(item)
        print(json.dumps(output, indent=2))
        return 0

    if not pending:
        print("No pending uploads.")
        return 0

    for upload in pending:
        print(format_upload(upload))
    return 0


def cmd_retry_uploads(uploads: UploadRetry, config: Config, args: argparse.Namespace) -> int:
    """Retry failed uploads against the configured backend.

    Args:
        uploads: UploadRetry instance
        config: Config instance
        args: Parsed command-line arguments

    Returns:
        Exit code (0 if nothing failed, 1 otherwise)
    """
    backend = BackendClient.from_config(config)
    if backend is None:
        print("Error: No backend configured (set backend_url in config.json)", file=sys.stderr)
        return 1
    if not backend.is_reachable():
        print(f"Error: Backend {backend.base_url} is unreachable", file=sys.stderr)
        return 1

    succeeded, failed = uploads.retry_failed_uploads(backend.upload_capture)
    print(f"Uploaded: {succeeded}")
    print(f"Failed: {failed}")
    return 0 if failed == 0 else 1


def cmd_clear_uploads(uploads: UploadRetry, args: argparse.Namespace) -> int:
    """Delete every upload backup."""
    if not args.yes:
        print("Error: clear-uploads discards unsent captures; pass --yes to confirm", file=sys.stderr)
        return 1
    uploads.clear_all_backups()
    print("Upload backups cleared")
    return 0


def add_cli_commands(parser: argparse.ArgumentParser) -> None:
    """Add the --format option and CLI subcommands to a parser.

    Args:
        parser: Parser that receives the commands
    """
    parser.add_argument(
        "--format",
        choices=["text", "json"],
        default="text",
        help="Output format (default: text)"
    )

    cli_subparsers = parser.add_subparsers(dest="cli_command", help="CLI commands")

    # status command
    cli_subparsers.add_parser(
        "status",
        help="Show queue counters and backend settings"
    )

    # queue command
    queue_parser = cli_subparsers.add_parser(
        "queue",
        help="List queued mutations"
    )
    queue_parser.add_argument(
        "--status",
        choices=[s.value for s in MutationStatus],
        help="Only list mutations with this status"
    )

    # enqueue command
    enqueue_parser = cli_subparsers.add_parser(
        "enqueue",
        help="Apply a local change, or queue it while offline"
    )
    enqueue_parser.add_argument(
        "type",
        type=str,
        help="Mutation type: CREATE, UPDATE or DELETE"
    )
    enqueue_parser.add_argument(
        "table",
        type=str,
        help="Backend table (e.g. fabric_rolls)"
    )
    enqueue_parser.add_argument(
        "record_id",
        type=str,
        help="ID of the affected record"
    )
    enqueue_parser.add_argument(
        "--data",
        type=str,
        help="Proposed field values as a JSON object"
    )
    enqueue_parser.add_argument(
        "--original",
        type=str,
        help="Snapshot of the record before the change as a JSON object"
    )
    enqueue_parser.add_argument(
        "--user",
        type=str,
        help="ID of the user making the change"
    )

    # remove command
    remove_parser = cli_subparsers.add_parser(
        "remove",
        help="Remove a mutation from the queue"
    )
    remove_parser.add_argument(
        "mutation_id",
        type=str,
        help="Mutation ID (or prefix)"
    )

    # conflicts command
    cli_subparsers.add_parser(
        "conflicts",
        help="List mutations waiting for conflict resolution"
    )

    # show-conflict command
    show_parser = cli_subparsers.add_parser(
        "show-conflict",
        help="Show the field analysis of a conflict"
    )
    show_parser.add_argument(
        "mutation_id",
        type=str,
        help="Mutation ID (or prefix)"
    )
    show_parser.add_argument(
        "--unified",
        action="store_true",
        help="Show a unified diff instead of the side-by-side listing"
    )

    # resolve command
    resolve_parser = cli_subparsers.add_parser(
        "resolve",
        help="Resolve a conflict"
    )
    resolve_parser.add_argument(
        "mutation_id",
        type=str,
        help="Mutation ID (or prefix)"
    )
    resolve_parser.add_argument(
        "choice",
        type=str,
        choices=["local", "server", "merge"],
        help="Resolution: local, server, or merge (requires --field for each conflict)"
    )
    resolve_parser.add_argument(
        "--field",
        dest="fields",
        action="append",
        help="Per-field choice for merge as name=local|server (repeatable)"
    )

    # sync command
    cli_subparsers.add_parser(
        "sync",
        help="Replay the queue against the backend"
    )

    # retry-failed command
    cli_subparsers.add_parser(
        "retry-failed",
        help="Re-queue mutations that exhausted their attempts"
    )

    # clear-queue command
    clear_parser = cli_subparsers.add_parser(
        "clear-queue",
        help="Remove every queued mutation"
    )
    clear_parser.add_argument(
        "--yes",
        action="store_true",
        help="Confirm discarding unsynced changes"
    )

    # upload command
    upload_parser = cli_subparsers.add_parser(
        "upload",
        help="Back up and upload a capture image"
    )
    upload_parser.add_argument(
        "session_id",
        type=str,
        help="Stock-take session ID"
    )
    upload_parser.add_argument(
        "sequence",
        type=int,
        help="Capture sequence number within the session"
    )
    upload_parser.add_argument(
        "image",
        type=Path,
        help="Path to the captured image"
    )
    upload_parser.add_argument(
        "--user",
        type=str,
        required=True,
        help="ID of the uploading user"
    )

    # uploads command
    cli_subparsers.add_parser(
        "uploads",
        help="List backed-up uploads waiting for retry"
    )

    # retry-uploads command
    cli_subparsers.add_parser(
        "retry-uploads",
        help="Retry failed uploads against the backend"
    )

    # clear-uploads command
    clear_uploads_parser = cli_subparsers.add_parser(
        "clear-uploads",
        help="Delete every upload backup"
    )
    clear_uploads_parser.add_argument(
        "--yes",
        action="store_true",
        help="Confirm discarding unsent captures"
    )


def add_cli_subparser(subparsers: argparse._SubParsersAction[argparse.ArgumentParser]) -> None:
    """Add CLI subparser and its nested subcommands.

    Args:
        subparsers: Parent subparsers object to add CLI parser to
    """
    cli_parser = subparsers.add_parser(
        "cli",
        help="Command-line interface",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    add_cli_commands(cli_parser)


def run(config_dir: Optional[Path], args: argparse.Namespace) -> int:
    """Run CLI with given arguments.

    Args:
        config_dir: Custom configuration directory or None for default
        args: Parsed command-line arguments (should have cli_command attribute)

    Returns:
        Exit code (0 for success, 1 for error)
    """
    if not getattr(args, "cli_command", None):
        print("Error: No CLI command specified. Use --help for available commands.", file=sys.stderr)
        return 1

    config = Config(config_dir=config_dir)
    store = open_store(config)
    queue = open_queue(config, store)
    uploads = UploadRetry(store, policy=config.get_retry_policy())

    try:
        if args.cli_command == "status":
            return cmd_status(queue, config, args)
        elif args.cli_command == "queue":
            return cmd_queue(queue, args)
        elif args.cli_command == "enqueue":
            return cmd_enqueue(queue, config, args)
        elif args.cli_command == "remove":
            return cmd_remove(queue, args)
        elif args.cli_command == "conflicts":
            return cmd_conflicts(queue, config, args)
        elif args.cli_command == "show-conflict":
            return cmd_show_conflict(queue, config, args)
        elif args.cli_command == "resolve":
            return cmd_resolve(queue, config, args)
        elif args.cli_command == "sync":
            return cmd_sync(queue, config, args)
        elif args.cli_command == "retry-failed":
            return cmd_retry_failed(queue, args)
        elif args.cli_command == "clear-queue":
            return cmd_clear_queue(queue, args)
        elif args.cli_command == "upload":
            return cmd_upload(uploads, config, args)
        elif args.cli_command == "uploads":
            return cmd_uploads(uploads, args)
        elif args.cli_command == "retry-uploads":
            return cmd_retry_uploads(uploads, config, args)
        elif args.cli_command == "clear-uploads":
            return cmd_clear_uploads(uploads, args)
        else:
            print(f"Error: Unknown command '{args.cli_command}'", file=sys.stderr)
            return 1
    except ValidationError as e:
        print(f"Error: Invalid {e.field} - {e.message}", file=sys.stderr)
        return 1
    finally:
        store.close()


def main() -> int:
    """Standalone entry point: `python -m lotsync.cli [-d DIR] <command>`."""
    parser = argparse.ArgumentParser(description="LotSync command-line interface")
    parser.add_argument(
        "-d", "--config-dir",
        type=Path,
        default=None,
        help="Custom configuration directory (default: ~/.config/lotsync/)"
    )
    add_cli_commands(parser)
    args = parser.parse_args()
    return run(args.config_dir, args)


if __name__ == "__main__":
    sys.exit(main())
