"""Explicit assembly of the ReconFlow components."""

import logging
from pathlib import Path
from typing import Any, Dict

from .client import SceneClient
from .error_handler import ErrorClassifier
from .events import EventBus
from .store import ReconstructionStore
from .utils.auth import AuthManager
from .utils.session import SessionStore
from .workflow import WorkflowEngine

logger = logging.getLogger(__name__)

DEFAULT_SESSION_FILE = "~/.recon-flow/session.json"


class ReconFlowApp:
    """Owns one instance of every component and wires them together.

    Use as an async context manager so queued failure events are delivered
    before the loop exits.
    """

    def __init__(self, config: Dict[str, Any]):
        self.config = config

        self.session = SessionStore(Path(config.get("session_file", DEFAULT_SESSION_FILE)))
        self.auth = AuthManager(self.session)
        self.client = SceneClient(config, auth=self.auth)
        self.store = ReconstructionStore(preview_size=int(config.get("preview_size", 256)))
        self.events = EventBus()

        self.classifier = ErrorClassifier(on_auth_failure=self.auth.logout)
        self.classifier.attach(self.events)

        self.engine = WorkflowEngine(self.client, self.store, self.events, config)
        logger.debug(f"ReconFlow configured for {self.client.base_url}")

    async def __aenter__(self) -> "ReconFlowApp":
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.close()

    async def close(self):
        self.engine.cancel()
        await self.events.close()
