#!/usr/bin/env python3
"""Web API for LotSync.

This module provides a RESTful HTTP API over the offline mutation queue,
conflict resolution and capture upload retry. When a backend is configured,
`run` also starts background sync on a daemon thread.
Uses only core/ modules - no Textual dependencies.

Endpoints:
    GET    /api/status                   Queue counters and last sync time
    GET    /api/queue                    List queued mutations
    POST   /api/queue                    Apply a local change, or queue it offline
    DELETE /api/queue                    Clear the queue
    DELETE /api/queue/<id>               Remove one mutation
    POST   /api/queue/retry-failed       Re-queue failed mutations
    GET    /api/conflicts                List conflicts with their analysis
    GET    /api/conflicts/<id>           Analysis and diff of one conflict
    POST   /api/conflicts/<id>/resolve   Resolve a conflict
    POST   /api/sync                     Replay the queue against the backend
    POST   /api/analyze                  Three-way analysis of arbitrary records
    GET    /api/uploads                  List backed-up uploads
    POST   /api/uploads                  Back up and upload a capture
    POST   /api/uploads/retry            Retry failed uploads
    DELETE /api/uploads                  Delete every upload backup
    GET    /api/health                   Health check

All endpoints return JSON responses. Mutations use the persisted wire format
(camelCase keys: recordId, originalData, serverData, ...).

Query parameters for GET /api/queue:
    - status: pending, processing, failed or conflict

POST /api/queue body:
    - type: CREATE, UPDATE or DELETE (required)
    - table: Backend table (required)
    - recordId: ID of the affected record (required)
    - data: Proposed field values (object)
    - originalData: Snapshot before the change (object)
    - userId: ID of the user making the change

POST /api/uploads body:
    - sessionId: Stock-take session (required)
    - captureSequence: Capture number within the session
    - userId: Uploading user (required)
    - imageDataUrl: Captured image as a base64 data URL (required)

POST /api/conflicts/<id>/resolve body:
    - resolution: local, server or merge (required)
    - fields: {field: "local" | "server"} for every conflicting field (merge)

POST /api/analyze body:
    - original, local, server: records to compare (objects)
    - resolutions: optional {field: side}; when complete, the merged record
      is included in the response
"""

from __future__ import annotations

import argparse
import functools
import logging
from pathlib import Path
from typing import Any, Callable, Dict, Optional

from flask import Flask, jsonify, request, Response
from flask_cors import CORS

from lotsync.core.background import BackgroundSync
from lotsync.core.backend import BackendClient, BackendError, OfflineError, decode_data_url
from lotsync.core.config import Config
from lotsync.core.conflicts import (
    analysis_to_dict,
    analyze_conflicts,
    apply_resolutions,
    get_diff_preview,
    unresolved_fields,
)
from lotsync.core.models import MutationStatus, QueuedMutation
from lotsync.core.mutations import OfflineMutator
from lotsync.core.resolution import ConflictResolutionSession
from lotsync.core.store import KeyValueStore, open_store
from lotsync.core.sync_queue import SyncQueue
from lotsync.core.uploads import UploadRetry
from lotsync.core.validation import (
    ValidationError,
    mutation_to_dict,
    upload_to_dict,
    validate_record,
    validate_resolution,
)

logger = logging.getLogger(__name__)


def api_endpoint(func: Callable) -> Callable:
    """Decorator for consistent API error handling.

    Catches ValidationError (400) and Exception (500) with proper
    JSON error responses and logging.
    """
    @functools.wraps(func)
    def wrapper(*args: Any, **kwargs: Any) -> Any:
        try:
            return func(*args, **kwargs)
        except ValidationError as e:
            return jsonify({"error": f"Invalid {e.field}: {e.message}"}), 400
        except Exception as e:
            logger.error(f"Error in {func.__name__}: {e}")
            return jsonify({"error": str(e)}), 500
    return wrapper


def _json_body() -> Dict[str, Any]:
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        raise ValidationError("body", "a JSON object is required")
    return data


def create_app(
    config_dir: Optional[Path] = None,
    store: Optional[KeyValueStore] = None,
    backend: Optional[BackendClient] = None,
) -> Flask:
    """Create and configure Flask application.

    Args:
        config_dir: Custom configuration directory (default: None)
        store: Store to use instead of the one selected in config
        backend: Backend client to use instead of the configured one

    Returns:
        Configured Flask application
    """
    app = Flask(__name__)
    CORS(app)  # Enable CORS for all routes

    config = Config(config_dir=config_dir)
    if store is None:
        store = open_store(config)
    if backend is None:
        backend = BackendClient.from_config(config)
    skip_fields = config.get_skip_fields()

    is_online: Callable[[], bool] = backend.is_reachable if backend else (lambda: False)
    queue = SyncQueue(
        store,
        is_online=is_online,
        max_attempts=int(config.get_sync_config().get("max_attempts", 3)),
        skip_fields=skip_fields,
    )
    policy = config.get_retry_policy()
    mutator = OfflineMutator(queue, backend, queue.is_online, policy=policy)
    uploads = UploadRetry(store, policy=policy)
    background = (
        BackgroundSync(queue, backend.execute_mutation, queue.is_online)
        if backend is not None else None
    )

    app.config["LOTSYNC_SYNC_INTERVAL"] = float(
        config.get_sync_config().get("interval_seconds", 30)
    )
    app.extensions["lotsync.queue"] = queue
    app.extensions["lotsync.uploads"] = uploads
    app.extensions["lotsync.sync"] = background
    logger.info(f"Web API initialized with {config.get('store_backend')} store")

    def conflict_payload(mutation: QueuedMutation) -> Dict[str, Any]:
        session = ConflictResolutionSession([mutation], lambda *a: None, skip_fields=skip_fields)
        analysis = session.analysis
        payload = mutation_to_dict(mutation)
        payload["analysis"] = analysis_to_dict(analysis)
        payload["diff"] = get_diff_preview(analysis)
        return payload

    def find_conflict(mutation_id: str) -> Optional[QueuedMutation]:
        mutation = queue.find_mutation(mutation_id)
        if mutation is None or mutation.status != MutationStatus.CONFLICT:
            return None
        return mutation

    # Error handlers
    @app.errorhandler(404)
    def not_found(error: Any) -> tuple[Response, int]:
        """Handle 404 errors."""
        return jsonify({"error": "Not found"}), 404

    @app.errorhandler(500)
    def internal_error(error: Any) -> tuple[Response, int]:
        """Handle 500 errors."""
        logger.error(f"Internal error: {error}")
        return jsonify({"error": "Internal server error"}), 500

    # Routes
    @app.route("/api/status", methods=["GET"])
    @api_endpoint
    def get_status() -> tuple[Response, int]:
        """Get queue counters."""
        status = queue.refresh_status()
        return jsonify({
            "isProcessing": status.is_processing,
            "pendingCount": status.pending_count,
            "failedCount": status.failed_count,
            "conflictCount": status.conflict_count,
            "lastSyncAt": status.last_sync_at.isoformat() if status.last_sync_at else None,
            "backendConfigured": backend is not None,
        }), 200

    @app.route("/api/queue", methods=["GET"])
    @api_endpoint
    def get_queue() -> tuple[Response, int]:
        """List queued mutations."""
        mutations = queue.get_all_mutations()
        status_filter = request.args.get("status")
        if status_filter:
            try:
                wanted = MutationStatus(status_filter)
            except ValueError:
                raise ValidationError("status", f"unknown status '{status_filter}'")
            mutations = [m for m in mutations if m.status == wanted]
        return jsonify([mutation_to_dict(m) for m in mutations]), 200

    @app.route("/api/queue", methods=["POST"])
    @api_endpoint
    def enqueue() -> tuple[Response, int]:
        """Apply a local change online, or queue it for sync."""
        data = _json_body()
        try:
            outcome = mutator.mutate(
                data.get("type"),
                data.get("table"),
                data.get("data"),
                record_id=data.get("recordId"),
                original_data=data.get("originalData"),
                user_id=data.get("userId"),
            )
        except BackendError as e:
            return jsonify({"error": str(e)}), 502

        if not outcome.queued:
            return jsonify({"queued": False, "data": outcome.data}), 200
        logger.info(f"Queued mutation {outcome.mutation_id} via API")
        return jsonify(mutation_to_dict(queue.get_mutation(outcome.mutation_id))), 201

    @app.route("/api/queue", methods=["DELETE"])
    @api_endpoint
    def clear_queue() -> tuple[Response, int]:
        """Remove every queued mutation."""
        queue.clear_queue()
        return jsonify({"message": "Queue cleared"}), 200

    @app.route("/api/queue/<mutation_id>", methods=["DELETE"])
    @api_endpoint
    def remove_mutation(mutation_id: str) -> tuple[Response, int]:
        """Remove one mutation."""
        if queue.remove_mutation(mutation_id):
            return jsonify({"message": f"Mutation {mutation_id} removed"}), 200
        return jsonify({"error": f"Mutation {mutation_id} not found"}), 404

    @app.route("/api/queue/retry-failed", methods=["POST"])
    @api_endpoint
    def retry_failed() -> tuple[Response, int]:
        """Re-queue mutations that exhausted their attempts."""
        count = queue.retry_failed()
        return jsonify({"requeued": count}), 200

    @app.route("/api/conflicts", methods=["GET"])
    @api_endpoint
    def get_conflicts() -> tuple[Response, int]:
        """List conflicts with their field analysis."""
        return jsonify([conflict_payload(m) for m in queue.get_conflicts()]), 200

    @app.route("/api/conflicts/<mutation_id>", methods=["GET"])
    @api_endpoint
    def get_conflict(mutation_id: str) -> tuple[Response, int]:
        """Get one conflict with its analysis and unified diff."""
        mutation = find_conflict(mutation_id)
        if mutation is None:
            return jsonify({"error": f"Conflict {mutation_id} not found"}), 404
        return jsonify(conflict_payload(mutation)), 200

    @app.route("/api/conflicts/<mutation_id>/resolve", methods=["POST"])
    @api_endpoint
    def resolve_conflict(mutation_id: str) -> tuple[Response, int]:
        """Resolve a conflict with local, server or per-field merge."""
        mutation = find_conflict(mutation_id)
        if mutation is None:
            return jsonify({"error": f"Conflict {mutation_id} not found"}), 404

        data = _json_body()
        resolution = validate_resolution(data.get("resolution"))
        fields = validate_record(data.get("fields"), "fields", allow_none=True) or {}

        session = ConflictResolutionSession(
            [mutation], queue.resolve_conflict, skip_fields=skip_fields
        )
        merged = None
        if resolution.value == "merge":
            for field, side in fields.items():
                session.set_field_resolution(field, side)
            merged = session.merge()
        elif resolution.value == "local":
            session.keep_local()
        else:
            session.keep_server()

        logger.info(f"Resolved conflict {mutation.id} with {resolution.value} via API")
        remaining = queue.get_mutation(mutation.id)
        return jsonify({
            "id": mutation.id,
            "resolution": resolution.value,
            "merged": merged,
            "mutation": mutation_to_dict(remaining) if remaining else None,
        }), 200

    @app.route("/api/sync", methods=["POST"])
    @api_endpoint
    def sync_now() -> tuple[Response, int]:
        """Replay the queue against the backend."""
        if background is None:
            return jsonify({"error": "No backend configured"}), 503

        try:
            result = background.force_sync()
        except OfflineError as e:
            return jsonify({"error": str(e)}), 503

        return jsonify({
            "success": result.success,
            "failed": result.failed,
            "conflicts": result.conflicts,
        }), 200

    @app.route("/api/analyze", methods=["POST"])
    @api_endpoint
    def analyze() -> tuple[Response, int]:
        """Three-way analysis of records supplied in the request."""
        data = _json_body()
        original = validate_record(data.get("original"), "original", allow_none=True)
        local = validate_record(data.get("local"), "local", allow_none=True)
        server = validate_record(data.get("server"), "server", allow_none=True)
        resolutions = validate_record(data.get("resolutions"), "resolutions", allow_none=True)

        analysis = analyze_conflicts(original, local, server, skip_fields)
        output = analysis_to_dict(analysis)
        output["diff"] = get_diff_preview(analysis)
        output["merged"] = None
        if resolutions is not None and not unresolved_fields(analysis, resolutions):
            output["merged"] = apply_resolutions(
                original, local, server, resolutions, skip_fields
            )
        return jsonify(output), 200

    @app.route("/api/uploads", methods=["GET"])
    @api_endpoint
    def get_uploads() -> tuple[Response, int]:
        """List backed-up uploads without their payloads."""
        output = []
        for upload in uploads.get_pending_uploads():
            item = upload_to_dict(upload)
            del item["payload"]
            output.append(item)
        return jsonify(output), 200

    @app.route("/api/uploads", methods=["POST"])
    @api_endpoint
    def upload_capture() -> tuple[Response, int]:
        """Back up a capture, then try to upload it."""
        data = _json_body()
        payload = data.get("imageDataUrl")
        decode_data_url(payload)
        backup_id = uploads.backup_before_upload(
            data.get("sessionId"),
            data.get("captureSequence", 0),
            data.get("userId"),
            payload,
        )

        if backend is not None and queue.is_online():
            if backend.upload_capture(uploads.get_upload(backup_id)):
                uploads.mark_upload_success(backup_id)
                return jsonify({"id": backup_id, "uploaded": True}), 201
            uploads.mark_upload_failed(backup_id, "Upload rejected by backend")
        else:
            uploads.mark_upload_failed(backup_id, "Backend unreachable")

        logger.info(f"Upload {backup_id} kept for retry")
        return jsonify({"id": backup_id, "uploaded": False}), 202

    @app.route("/api/uploads/retry", methods=["POST"])
    @api_endpoint
    def retry_uploads() -> tuple[Response, int]:
        """Retry failed uploads."""
        if backend is None:
            return jsonify({"error": "No backend configured"}), 503
        if not queue.is_online():
            return jsonify({"error": "Cannot retry uploads while offline"}), 503

        succeeded, failed = uploads.retry_failed_uploads(backend.upload_capture)
        return jsonify({"succeeded": succeeded, "failed": failed}), 200

    @app.route("/api/uploads", methods=["DELETE"])
    @api_endpoint
    def clear_uploads() -> tuple[Response, int]:
        """Delete every upload backup."""
        uploads.clear_all_backups()
        return jsonify({"message": "Upload backups cleared"}), 200

    @app.route("/api/health", methods=["GET"])
    def health_check() -> tuple[Response, int]:
        """Health check endpoint.

        Returns:
            JSON response indicating service health
        """
        return jsonify({"status": "ok"}), 200

    return app


def add_web_subparser(subparsers: argparse._SubParsersAction[argparse.ArgumentParser]) -> None:
    """Add web subparser and its arguments.

    Args:
        subparsers: Parent subparsers object to add web parser to
    """
    web_parser = subparsers.add_parser(
        "web",
        help="Start web API server",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )

    web_parser.add_argument(
        "--host",
        type=str,
        default="127.0.0.1",
        help="Host to bind to (default: 127.0.0.1)"
    )

    web_parser.add_argument(
        "--port",
        type=int,
        default=5000,
        help="Port to bind to (default: 5000)"
    )

    web_parser.add_argument(
        "--debug",
        action="store_true",
        help="Enable debug mode"
    )


def run(config_dir: Optional[Path], args: argparse.Namespace) -> int:
    """Run web server with given arguments.

    Args:
        config_dir: Custom configuration directory or None for default
        args: Parsed command-line arguments (should have host, port, debug attributes)

    Returns:
        Exit code (0 for success)
    """
    logger.info("Starting LotSync Web API")
    if config_dir:
        logger.info(f"Using custom config directory: {config_dir}")

    app = create_app(config_dir=config_dir)

    background = app.extensions["lotsync.sync"]
    if background is not None:
        background.start(app.config["LOTSYNC_SYNC_INTERVAL"])

    try:
        app.run(
            host=args.host,
            port=args.port,
            debug=args.debug
        )
    finally:
        if background is not None:
            background.stop()

    return 0
