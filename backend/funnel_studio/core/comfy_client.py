"""HTTP + WebSocket client wrapper for interacting with ComfyUI."""

import json
import logging
import uuid
import urllib.request
import urllib.parse
import urllib.error
import websocket
import time
import socket
from typing import Dict, Any, List, Optional

logger = logging.getLogger(__name__)


class ComfyConnectionError(Exception):
    """Raised when unable to connect to ComfyUI instance."""
    pass


class ComfyResponseError(Exception):
    """Raised when ComfyUI returns an error response."""
    pass


class ComfyClient:
    """Queues API-format graphs on ComfyUI and waits for their outputs."""

    def __init__(self, base_url: str, *, timeout: float = 10.0):
        self.base_url = base_url
        self.timeout = timeout
        # ComfyUI pairs WebSocket streams to a client id; generate once per client.
        self.client_id = str(uuid.uuid4())
        # WebSocket handle; lazily connected when a streaming call is made.
        self.ws = None
        self._default_backoff = 1
        self._max_backoff = 30

    def _get_url(self, path: str) -> str:
        return f"{self.base_url.rstrip('/')}{path}"

    def connect(self, *, max_attempts: int = 5):
        """Connect to the ComfyUI WebSocket with exponential backoff."""
        ws_url = self._get_url(f"/ws?clientId={self.client_id}").replace("http", "ws", 1)

        delay = self._default_backoff
        for attempt in range(max_attempts):
            try:
                self.ws = websocket.WebSocket()
                self.ws.connect(ws_url, timeout=5)
                self.ws.settimeout(self.timeout)
                return
            except (ConnectionRefusedError, socket.timeout, websocket.WebSocketException, OSError) as e:
                if attempt == max_attempts - 1:
                    raise ComfyConnectionError(
                        f"Failed to connect to ComfyUI at {self.base_url} after {max_attempts} attempts. Is it running?"
                    ) from e
                time.sleep(delay)
                delay = min(delay * 2, self._max_backoff)

    def close(self):
        if self.ws:
            try:
                self.ws.close()
            except websocket.WebSocketException as e:
                logger.debug("Ignoring error while closing ComfyUI websocket: %s", e)
            self.ws = None

    def _ping(self) -> bool:
        if not self.ws:
            return False
        try:
            self.ws.ping()
            return True
        except (websocket.WebSocketException, OSError):
            return False

    def queue_prompt(self, prompt: Dict[str, Any]) -> str:
        """Submit a workflow to ComfyUI."""
        p = {"prompt": prompt, "client_id": self.client_id}
        data = json.dumps(p).encode('utf-8')
        try:
            req = urllib.request.Request(
                self._get_url("/prompt"), data=data, headers={"Content-Type": "application/json"}
            )
            with urllib.request.urlopen(req, timeout=10) as response:
                return json.loads(response.read())['prompt_id']
        except urllib.error.HTTPError as e:
            error_body = e.read().decode('utf-8')
            raise ComfyResponseError(f"ComfyUI Error {e.code}: {error_body}") from e
        except urllib.error.URLError as e:
            raise ComfyConnectionError(f"Could not connect to ComfyUI at {self.base_url}. Is it running?") from e

    def get_history(self, prompt_id: str) -> Dict[str, Any]:
        """Retrieve history for a specific prompt ID."""
        try:
            with urllib.request.urlopen(self._get_url(f"/history/{prompt_id}"), timeout=10) as response:
                return json.loads(response.read())
        except urllib.error.URLError as e:
            raise ComfyConnectionError(f"Could not retrieve history from {self.base_url}") from e

    def wait_for_completion(self, prompt_id: str, *, max_reconnect_attempts: int = 10) -> None:
        """Block until ComfyUI reports the prompt finished executing."""
        if not self.ws:
            self.connect()

        reconnect_attempts = 0
        while True:
            try:
                out = self.ws.recv()
                reconnect_attempts = 0
            except websocket.WebSocketTimeoutException:
                # Timeouts are normal between frames; reconnect only if the ping fails too.
                if not self._ping():
                    self.close()
                    self.connect()
                continue
            except (websocket.WebSocketException, ConnectionResetError, socket.error) as e:
                reconnect_attempts += 1
                if reconnect_attempts > max_reconnect_attempts:
                    self.close()
                    raise ComfyConnectionError(
                        f"Lost connection to ComfyUI after {max_reconnect_attempts} reconnection attempts."
                    ) from e
                logger.warning(
                    "Connection to ComfyUI lost, reconnection attempt %s/%s",
                    reconnect_attempts,
                    max_reconnect_attempts,
                )
                self.close()
                self.connect()
                continue

            # Binary frames are previews; only JSON status messages matter here.
            if not isinstance(out, str):
                continue

            message = json.loads(out)
            data = message.get("data") or {}
            if message.get("type") == "execution_error" and data.get("prompt_id") in (None, prompt_id):
                self.close()
                raise ComfyResponseError(
                    f"ComfyUI execution failed at node {data.get('node_id', 'unknown')} "
                    f"({data.get('node_type', 'unknown')}): {data.get('exception_message', 'Unknown error')}"
                )
            if message.get("type") == "executing" and data.get("node") is None and data.get("prompt_id") == prompt_id:
                self.close()
                return

    def get_output_images(self, prompt_id: str, *, attempts: int = 5) -> List[Dict[str, Any]]:
        """
        Read the output image descriptors of a finished prompt from /history.
        History can lag slightly behind the websocket completion signal, so retry briefly.
        """
        for _attempt in range(attempts):
            images = self._history_output_images(prompt_id)
            if images:
                return images
            time.sleep(0.2)
        return []

    def _history_output_images(self, prompt_id: str) -> List[Dict[str, Any]]:
        history_map = self.get_history(prompt_id)
        history: Optional[Dict[str, Any]] = history_map.get(prompt_id) if isinstance(history_map, dict) else None
        if not isinstance(history, dict):
            return []

        outputs = history.get("outputs") or {}
        if not isinstance(outputs, dict):
            return []

        output_items: List[Dict[str, Any]] = []
        for node_output in outputs.values():
            if not isinstance(node_output, dict):
                continue
            for image in node_output.get("images") or []:
                if not isinstance(image, dict) or not image.get("filename"):
                    continue
                subfolder = image.get("subfolder") or ""
                image_type = image.get("type") or "output"
                item = dict(image)
                item["subfolder"] = subfolder
                item["type"] = image_type
                item["url"] = self._get_url(
                    f"/view?filename={urllib.parse.quote(str(image['filename']))}"
                    f"&subfolder={urllib.parse.quote(str(subfolder))}"
                    f"&type={urllib.parse.quote(str(image_type))}"
                )
                output_items.append(item)
        return output_items
