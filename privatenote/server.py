from __future__ import annotations

import asyncio
import io
import json
import logging
import threading
from datetime import datetime, timezone
from typing import Any, Coroutine, Dict, Mapping, Optional, Tuple, TypeVar

from flask import Flask, jsonify, request, send_file

from .config import Settings
from .errors import (
    AuthenticationError,
    InvalidInputError,
    MalformedInputError,
    PrivateNoteError,
    ReadOnlyStoreError,
    StoreUnavailableError,
)
from .logs import setup_logging
from .repository import LoadResult, NoteRepository, SaveOutcome
from .store import JsonFileRecordStore, SnapshotRecordStore, export_collection, parse_collection

log = logging.getLogger("privatenote")

T = TypeVar("T")

SAVE_MESSAGES = {
    SaveOutcome.CREATED: "Note saved successfully",
    SaveOutcome.UPDATED: "Note saved successfully",
    SaveOutcome.DELETED: "Note deleted successfully",
    SaveOutcome.NOTHING_TO_DELETE: "No note to delete",
}

# Most specific first.
ERROR_STATUS: Tuple[Tuple[type, int], ...] = (
    (InvalidInputError, 400),
    (AuthenticationError, 422),
    (MalformedInputError, 422),
    (ReadOnlyStoreError, 409),
    (StoreUnavailableError, 503),
)


class _LoopThread:
    """Background event loop shared by all request threads.

    The repository's per-fingerprint locks belong to this loop, so every
    coroutine has to be submitted here.
    """

    def __init__(self):
        self.loop = asyncio.new_event_loop()
        self._thread = threading.Thread(target=self.loop.run_forever, name="privatenote-loop", daemon=True)
        self._thread.start()

    def run(self, coro: Coroutine[Any, Any, T]) -> T:
        return asyncio.run_coroutine_threadsafe(coro, self.loop).result()

    def close(self) -> None:
        self.loop.call_soon_threadsafe(self.loop.stop)
        self._thread.join()
        self.loop.close()


def _load_payload(result: LoadResult) -> Dict[str, Any]:
    if not result.found:
        return {"found": False, "content": "", "timestamp": None, "message": "No note found with this title"}
    return {"found": True, "content": result.content, "timestamp": result.timestamp, "message": "Note loaded successfully"}


def _string_field(body: Any, name: str) -> str:
    if not isinstance(body, Mapping):
        raise InvalidInputError("Request body must be a JSON object")
    value = body.get(name)
    if not isinstance(value, str):
        raise InvalidInputError(f"Missing or invalid field: {name}")
    return value


def create_app(repository: Optional[NoteRepository] = None, settings: Optional[Settings] = None) -> Flask:
    settings = settings or Settings.from_env()
    if repository is None:
        repository = NoteRepository(JsonFileRecordStore(settings.data_dir))

    app = Flask(__name__)
    app.config["MAX_CONTENT_LENGTH"] = settings.max_import_bytes
    runner = _LoopThread()
    app.extensions["privatenote"] = {"repository": repository, "runner": runner}

    @app.errorhandler(PrivateNoteError)
    def handle_note_error(e: PrivateNoteError):
        status = 500
        for cls, code in ERROR_STATUS:
            if isinstance(e, cls):
                status = code
                break
        message = str(e) or e.__class__.__name__
        if isinstance(e, AuthenticationError):
            message = "Failed to decrypt content"
        return jsonify({"error": message, "kind": e.__class__.__name__}), status

    # ---------- Health ----------
    @app.route("/health")
    def health():
        return {"status": "ok"}

    # ---------- API ----------
    @app.route("/api/notes/load", methods=["POST"])
    def api_load_note():
        body = request.get_json(silent=True) or {}
        title = _string_field(body, "title")
        result = runner.run(repository.load(title))
        return jsonify(_load_payload(result))

    @app.route("/api/notes/save", methods=["POST"])
    def api_save_note():
        body = request.get_json(silent=True) or {}
        title = _string_field(body, "title")
        content = _string_field(body, "content")
        result = runner.run(repository.save(title, content))
        return jsonify({"result": result.outcome.value, "message": SAVE_MESSAGES[result.outcome], "timestamp": result.timestamp})

    @app.route("/api/export", methods=["GET"])
    def api_export():
        payload = runner.run(export_collection(repository))
        stamp = datetime.now(timezone.utc).strftime("%Y-%m-%d_%H-%M-%S")
        buf = io.BytesIO((json.dumps(payload, ensure_ascii=False, indent=2) + "\n").encode("utf-8"))
        buf.seek(0)
        log.info("Collection exported", extra={"event": "export", "extra_data": {"count": len(payload["notes"])}})
        return send_file(buf, mimetype="application/json", as_attachment=True, download_name=f"privatenote_{stamp}.json")

    @app.route("/api/import/load", methods=["POST"])
    def api_import_load():
        upload = request.files.get("file")
        if upload is None:
            raise InvalidInputError("No file provided")
        title = _string_field(request.form, "title")
        try:
            data = json.loads(upload.read().decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise MalformedInputError("Import file is not valid JSON") from e
        snapshot = NoteRepository(SnapshotRecordStore(parse_collection(data)))
        result = runner.run(snapshot.load(title))
        return jsonify(_load_payload(result))

    return app


def main() -> None:
    settings = Settings.from_env()
    setup_logging(settings.log_level)
    settings.data_dir.mkdir(parents=True, exist_ok=True)
    app = create_app(settings=settings)
    log.info("Starting server", extra={"event": "startup", "extra_data": {"port": settings.port, "data_dir": str(settings.data_dir)}})
    app.run(host=settings.host, port=settings.port, threaded=True)


if __name__ == "__main__":
    main()
