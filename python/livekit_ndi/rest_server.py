"""
  ==============================================================================

   This file is part of the livekit-ndi bridge.
   Copyright (c) 2025 - kunitoki@gmail.com

   livekit-ndi is an open source tool subject to open-source licensing.

   The code included in this file is provided under the terms of the ISC license
   http://www.isc.org/downloads/software-support-policy/isc-license. Permission
   to use, copy, modify, and/or distribute this software for any purpose with or
   without fee is hereby granted provided that the above copyright notice and
   this permission notice appear in all copies.

   LIVEKIT-NDI IS PROVIDED "AS IS" WITHOUT ANY WARRANTY, AND ALL WARRANTIES,
   WHETHER EXPRESSED OR IMPLIED, INCLUDING MERCHANTABILITY AND FITNESS FOR
   PURPOSE, ARE DISCLAIMED.

  ==============================================================================
"""

from __future__ import annotations

import dataclasses
import logging
import threading
from typing import Any, Optional

from .bridge import LiveKitNDIBridge

__all__ = ["RestStatusServer", "start_rest_server"]

_logger = logging.getLogger(__name__)


class RestStatusServer:
    """Expose :class:`LiveKitNDIBridge` metrics over a small Flask REST API."""

    def __init__ (self, bridge: LiveKitNDIBridge, host: str = "127.0.0.1", port: int = 5000) -> None:
        try:  # pragma: no cover - exercised when Flask is available
            from flask import Flask, jsonify
            from werkzeug.serving import make_server
        except ImportError as exc:  # pragma: no cover - import guard
            raise ImportError("Flask is required for the REST status server; install flask>=2.3") from exc

        self._bridge = bridge
        self._host = host
        self._port = port
        self._app = Flask(__name__)
        self._jsonify = jsonify
        self._make_server = make_server
        self._server = None
        self._thread: Optional[threading.Thread] = None

        self._register_routes()

    @property
    def app (self) -> Any:
        return self._app

    def start (self) -> None:
        if self._server is not None:
            return

        self._server = self._make_server(self._host, self._port, self._app)
        self._thread = threading.Thread(target=self._server.serve_forever, name="livekit-ndi-rest", daemon=True)
        self._thread.start()
        _logger.info("REST status server listening on http://%s:%d", self._host, self._port)

    def close (self) -> None:
        if self._server is None:
            return

        _logger.info("Stopping REST status server on http://%s:%d", self._host, self._port)
        self._server.shutdown()
        if self._thread is not None:
            self._thread.join(timeout=2.0)
        self._server = None
        self._thread = None

    def _register_routes (self) -> None:
        app = self._app

        @app.get("/health")
        def health () -> Any:
            return self._jsonify({"status": "ok", "identity": self._bridge.config.identity})

        @app.get("/participants")
        def list_participants () -> Any:
            payload = {
                identity: dataclasses.asdict(metrics)
                for identity, metrics in self._bridge.get_all_participant_metrics().items()
            }
            return self._jsonify({"participants": payload})

        @app.get("/participants/<identity>")
        def get_participant (identity: str) -> Any:
            try:
                metrics = dataclasses.asdict(self._bridge.get_participant_metrics(identity))
            except KeyError:
                return self._jsonify({"error": f"Participant '{identity}' not found"}), 404
            return self._jsonify(
                {
                    "identity": identity,
                    "sender": self._bridge.registry.get(identity) is not None,
                    "metrics": metrics,
                }
            )


def start_rest_server (bridge: LiveKitNDIBridge, host: str = "127.0.0.1", port: int = 5000) -> RestStatusServer:
    """Create and start a :class:`RestStatusServer` instance."""

    server = RestStatusServer(bridge, host=host, port=port)
    server.start()
    return server
