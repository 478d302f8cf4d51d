import asyncio
import contextlib
import re
import threading
import time
from typing import Dict, Optional

from config import log
from provisioning.errors import TransportError


class EventHubHandle:
    """An open subscription to the events of a peer or orderer"""

    def __init__(self, handle_id: str):
        self.handle_id = handle_id

    def is_connected(self) -> bool:
        raise NotImplementedError

    def disconnect(self):
        raise NotImplementedError


class ContainerLogEventHub(EventHubHandle):
    """Follows the log stream of a Fabric node container and waits for given lines to show up"""

    def __init__(self, handle_id: str, container):
        super().__init__(handle_id)
        self.container = container
        self._stream = None
        self._buffer = b""

    def connect(self):
        # Only lines written from now on are of interest
        self._stream = self.container.logs(since=int(time.time()))
        log.debug(f"Connected to the log stream of container {self.container.container_name}")
        return self

    def is_connected(self):
        return self._stream is not None

    def _scan(self, regex):
        for chunk in self._stream:
            self._buffer += chunk
            *lines, self._buffer = self._buffer.split(b"\n")
            for line in lines:
                text = line.decode("utf-8", errors="replace")
                if regex.search(text):
                    return text
        return None

    async def wait_for(self, pattern: str, timeout: float) -> str:
        """ Wait for a log line matching pattern and return it.

        :raises TransportError: the line did not show up within timeout seconds, or the stream ended
        """
        if not self.is_connected():
            raise TransportError(f"Event hub {self.handle_id} is not connected")
        regex = re.compile(pattern)
        try:
            line = await asyncio.wait_for(asyncio.to_thread(self._scan, regex), timeout=timeout)
        except asyncio.TimeoutError:
            raise TransportError(
                f"No event matching '{pattern}' from {self.container.container_name} within {timeout}s") from None
        if line is None:
            raise TransportError(f"Log stream of {self.container.container_name} ended")
        return line

    def disconnect(self):
        stream, self._stream = self._stream, None
        if stream is not None:
            # Closing the stream unblocks a pending wait_for() thread
            stream.close()
            log.debug(f"Disconnected from the log stream of container {self.container.container_name}")


class EventHubRegistry:
    """Table of the event hub handles still open, keyed by handle id.

    Used as a context manager (``with registry:`` or
    ``async with registry.scope():``) every open handle gets disconnected when
    the block is left, whether it returns or raises. ``scope()`` also covers
    exceptions of tasks that nobody awaited.
    """

    def __init__(self):
        self._handles: Dict[str, EventHubHandle] = {}
        self._lock = threading.Lock()

    def register_handle(self, handle: EventHubHandle):
        with self._lock:
            current = self._handles.get(handle.handle_id)
            if current is not None and current is not handle:
                raise ValueError(f"Another event hub is registered as {handle.handle_id}")
            self._handles[handle.handle_id] = handle
        return handle

    def unregister_handle(self, handle_id: str) -> Optional[EventHubHandle]:
        with self._lock:
            return self._handles.pop(handle_id, None)

    def __len__(self):
        with self._lock:
            return len(self._handles)

    def __contains__(self, handle_id):
        with self._lock:
            return handle_id in self._handles

    def cleanup_all(self) -> int:
        """ Disconnect every handle still connected and empty the registry.
        Calling it again, or on an empty registry, does nothing.

        :returns: the number of handles disconnected
        """
        with self._lock:
            handles = list(self._handles.values())
            self._handles.clear()

        disconnected = 0
        for handle in handles:
            if not handle.is_connected():
                continue
            try:
                handle.disconnect()
                disconnected += 1
            except Exception as e:
                # Keep going, the remaining handles must be released too
                log.warning(f"Cannot disconnect event hub {handle.handle_id}: {e}")
        if handles:
            log.info(f"Event hub cleanup: {disconnected} of {len(handles)} handles disconnected")
        return disconnected

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_value, traceback):
        self.cleanup_all()
        return False

    @contextlib.asynccontextmanager
    async def scope(self):
        loop = asyncio.get_running_loop()
        previous_handler = loop.get_exception_handler()

        def on_unhandled(loop, context):
            log.error(f"Unhandled exception in the event loop: {context.get('message')}", exc_info=context.get("exception"))
            self.cleanup_all()
            if previous_handler is not None:
                previous_handler(loop, context)

        loop.set_exception_handler(on_unhandled)
        try:
            yield self
        finally:
            loop.set_exception_handler(previous_handler)
            self.cleanup_all()
