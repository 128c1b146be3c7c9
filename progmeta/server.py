"""
HTTP surface for progmeta.

Routes:
    GET  /                  HTML list of stored programs
    GET  /programs          JSON array of hex-encoded program hashes
    GET  /program/<hash>    Stored manifest JSON for one program
    POST /add-program-git   Build from a git URL (request body)
    POST /add-program-tar   Build from a tar archive (request body)

Both build routes answer with a newline-delimited JSON stream of build events
that ends after the terminal event. The response starts as soon as the request
is queued, so the caller also sees output while earlier builds are running.
"""

import logging
from collections.abc import Iterator
from typing import Optional

from flask import Flask, Response, jsonify, render_template_string, request
from flask_cors import CORS

from progmeta.config import ProgmetaConfig
from progmeta.errors import OrchestratorClosedError, ProgmetaError, QueueFullError
from progmeta.orchestrator import BuildOrchestrator, BuildRequest
from progmeta.responder import Responder
from progmeta.schemas import (
    ArchiveSource,
    GitSource,
    ManifestInfo,
    SourceRef,
    event_to_json,
)
from progmeta.store import ProgramStore

logger = logging.getLogger(__name__)

NDJSON_MIMETYPE = "application/x-ndjson"

FRONT_PAGE = """<!doctype html>
<html>
    <head><title>Program metadata http service</title></head>
    <body>
        <h1>Program metadata http service</h1>
        <ul>
        {% for program in programs %}
            <li><a href="program/{{ program.hash }}">{{ program.name }} <code>{{ program.hash }}</code></a></li>
        {% endfor %}
        </ul>
    </body>
</html>
"""


def _stream_events(responder: Responder) -> Iterator[str]:
    """Yield NDJSON lines until the terminal event; mark the caller gone on exit."""
    try:
        for event in responder.events():
            yield event_to_json(event) + "\n"
    finally:
        # Runs on normal completion and when the client disconnects mid-stream
        responder.disconnect()


def create_app(
    store: ProgramStore,
    orchestrator: BuildOrchestrator,
    config: Optional[ProgmetaConfig] = None,
) -> Flask:
    """
    Create the Flask application.

    Args:
        store: Program store to read from (the orchestrator's pipeline writes it)
        orchestrator: Started build orchestrator
        config: Service configuration (defaults if None)
    """
    config = config or ProgmetaConfig()
    app = Flask(__name__)
    # Browser clients on any origin may read and submit
    CORS(app, methods=["GET", "POST"], send_wildcard=True)

    def submit(source: SourceRef) -> Response:
        responder = Responder(
            capacity=config.responder_capacity,
            terminal_timeout=config.terminal_timeout,
        )
        build_request = BuildRequest(source=source, responder=responder)
        try:
            orchestrator.submit(build_request)
        except QueueFullError as e:
            return Response(f"Queue is full: {e}", status=503, mimetype="text/plain")
        except OrchestratorClosedError as e:
            return Response(str(e), status=503, mimetype="text/plain")
        return Response(_stream_events(responder), mimetype=NDJSON_MIMETYPE)

    @app.post("/add-program-git")
    def add_program_git():
        """Add a program from a git repository."""
        git_url = request.get_data(as_text=True).strip()
        if not git_url:
            return Response("Request body must be a git URL", status=400, mimetype="text/plain")
        return submit(GitSource(url=git_url))

    @app.post("/add-program-tar")
    def add_program_tar():
        """Add a program given as a tar archive."""
        raw_archive = request.get_data()
        if not raw_archive:
            return Response("Request body must be a tar archive", status=400, mimetype="text/plain")
        return submit(ArchiveSource(data=raw_archive))

    @app.get("/programs")
    def list_programs():
        """Get hashes of all programs in the store."""
        return jsonify([program_hash.hex() for program_hash in store.list()])

    @app.get("/program/<program_hash>")
    def get_program(program_hash: str):
        """Get metadata about a program with a given hash."""
        try:
            key = bytes.fromhex(program_hash)
        except ValueError:
            return Response(f"Cannot decode hex {program_hash}", status=400, mimetype="text/plain")
        value = store.get(key)
        if value is None:
            return Response("Program not found", status=404, mimetype="text/plain")
        return Response(value, mimetype="application/json")

    @app.get("/")
    def front_page():
        """List programs by package name."""
        programs = []
        for program_hash in store.list():
            value = store.get(program_hash)
            # Tolerate a record disappearing or not decoding between list and get
            if value is None:
                continue
            try:
                manifest = ManifestInfo.from_json(value)
            except (ValueError, KeyError, TypeError):
                logger.warning(f"Skipping undecodable program record {program_hash.hex()}")
                continue
            programs.append({"hash": program_hash.hex(), "name": manifest.name})
        programs.sort(key=lambda p: (p["name"], p["hash"]))
        return render_template_string(FRONT_PAGE, programs=programs)

    @app.errorhandler(ProgmetaError)
    def handle_progmeta_error(error: ProgmetaError):
        logger.error(f"Request failed: {error}")
        return Response(str(error), status=500, mimetype="text/plain")

    return app
