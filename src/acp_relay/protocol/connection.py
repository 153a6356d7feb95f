"""
Bidirectional JSON-RPC connection over newline-delimited JSON.

A single Connection multiplexes three kinds of traffic in both directions:

- Calls we make (``call``) and the Responses that answer them
- Calls the peer makes, answered by handlers registered per method name
- One-way Notifications in either direction (``notify`` / registered handlers)

Reading happens on one task. Incoming calls each get their own task so a
slow handler (a permission prompt waiting on a human, say) never stalls the
stream. Notifications go through one ordered inbox drained by a single
dispatcher task, so they reach their handler in wire order. Responses
are matched to their call as soon as they are read, but ``call`` only returns
once every notification that arrived before the Response has been handled.
For ``session/prompt`` that makes the Response a reliable "no more updates for
this turn" signal. A handler that itself makes a call is not held back by
that rule, since it is the notification still being handled.
"""

import asyncio
import inspect
from typing import Any, Awaitable, Callable, Union

import structlog

from .errors import ConnectionClosed, FramingError, RemoteError, UnhandledMethod
from .framing import MessageStream

logger = structlog.get_logger()

JSONRPC_VERSION = "2.0"

RequestHandler = Callable[[Any], Union[Awaitable[Any], Any]]
NotificationHandler = Callable[[Any], Union[Awaitable[None], None]]

# Inbox sentinel pushed by the reader when the stream is finished
_END_OF_STREAM: dict[str, Any] = {}


class Connection:
    """JSON-RPC 2.0 peer over an asyncio reader/writer pair."""

    def __init__(
        self,
        writer: asyncio.StreamWriter,
        reader: asyncio.StreamReader,
        *,
        request_handlers: dict[str, RequestHandler] | None = None,
        notification_handlers: dict[str, NotificationHandler] | None = None,
        name: str = "acp",
    ):
        self.name = name
        self._stream = MessageStream(reader, writer)
        self._request_handlers: dict[str, RequestHandler] = dict(request_handlers or {})
        self._notification_handlers: dict[str, NotificationHandler] = dict(
            notification_handlers or {}
        )

        self._next_id = 0
        # Futures resolve to (response, notifications queued before it)
        self._pending: dict[int, asyncio.Future[tuple[dict[str, Any], int]]] = {}
        self._queued = 0
        self._dispatched = 0
        self._progress = asyncio.Condition()
        self._inbox: asyncio.Queue[dict[str, Any]] = asyncio.Queue()
        self._handler_tasks: set[asyncio.Task[None]] = set()
        self._receive_task: asyncio.Task[None] | None = None
        self._dispatch_task: asyncio.Task[None] | None = None

        self._started = False
        self._closed = False
        self._finished = False
        self._close_reason: BaseException | None = None
        self._closed_event = asyncio.Event()

    @classmethod
    def open(
        cls,
        writer: asyncio.StreamWriter,
        reader: asyncio.StreamReader,
        **kwargs: Any,
    ) -> "Connection":
        """Create a connection and start reading immediately."""
        connection = cls(writer, reader, **kwargs)
        connection.start()
        return connection

    def start(self) -> None:
        """Start the read loop and the dispatcher (requires a running loop)."""
        if self._started:
            return
        self._started = True
        self._receive_task = asyncio.create_task(
            self._receive_loop(), name=f"{self.name}.receive"
        )
        self._dispatch_task = asyncio.create_task(
            self._dispatch_loop(), name=f"{self.name}.dispatch"
        )

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def close_reason(self) -> BaseException | None:
        """Exception that brought the connection down, if any."""
        return self._close_reason

    @property
    def pending_calls(self) -> int:
        return len(self._pending)

    # Handler table

    def register_request_handler(self, method: str, handler: RequestHandler) -> None:
        """Register the handler answering incoming calls for ``method``."""
        self._request_handlers[method] = handler
        logger.debug("Request handler registered", connection=self.name, method=method)

    def register_notification_handler(
        self, method: str, handler: NotificationHandler
    ) -> None:
        """Register the handler receiving notifications for ``method``."""
        self._notification_handlers[method] = handler
        logger.debug(
            "Notification handler registered", connection=self.name, method=method
        )

    def unregister(self, method: str) -> None:
        """Remove any handler registered for ``method``."""
        self._request_handlers.pop(method, None)
        self._notification_handlers.pop(method, None)

    # Outgoing traffic

    async def call(
        self,
        method: str,
        params: Any = None,
        *,
        timeout: float | None = None,
    ) -> Any:
        """Send a call and wait for its response.

        Raises:
            RemoteError: the peer answered with an error payload
            ConnectionClosed: the connection closed before an answer arrived
            asyncio.TimeoutError: ``timeout`` seconds elapsed first
        """
        if self._closed:
            raise ConnectionClosed(reason=self._close_reason)
        self.start()

        request_id = self._next_id
        self._next_id += 1
        future: asyncio.Future[tuple[dict[str, Any], int]] = (
            asyncio.get_running_loop().create_future()
        )
        self._pending[request_id] = future

        message: dict[str, Any] = {"jsonrpc": JSONRPC_VERSION, "id": request_id, "method": method}
        if params is not None:
            message["params"] = params

        try:
            await self._send(message)
            if timeout is None:
                return await self._await_response(future)
            return await asyncio.wait_for(self._await_response(future), timeout)
        except asyncio.TimeoutError:
            logger.warning(
                "Call timed out",
                connection=self.name,
                method=method,
                request_id=request_id,
                timeout=timeout,
            )
            raise
        finally:
            self._pending.pop(request_id, None)

    async def _await_response(
        self, future: asyncio.Future[tuple[dict[str, Any], int]]
    ) -> Any:
        response, queued_before = await future

        # Notification handlers run on the dispatcher, which cannot wait on itself
        if asyncio.current_task() is not self._dispatch_task:
            async with self._progress:
                await self._progress.wait_for(
                    lambda: self._dispatched >= queued_before or self._finished
                )

        error = response.get("error")
        if error is not None:
            raise RemoteError.from_error_obj(error)
        return response.get("result")

    async def notify(self, method: str, params: Any = None) -> None:
        """Send a one-way notification."""
        if self._closed:
            raise ConnectionClosed(reason=self._close_reason)

        message: dict[str, Any] = {"jsonrpc": JSONRPC_VERSION, "method": method}
        if params is not None:
            message["params"] = params
        await self._send(message)

    async def _send(self, message: dict[str, Any]) -> None:
        try:
            await self._stream.write(message)
        except ConnectionError as e:
            raise ConnectionClosed("Transport write failed", reason=e) from e

    # Incoming traffic

    async def _receive_loop(self) -> None:
        try:
            while True:
                message = await self._stream.read()
                if message is None:
                    logger.debug("Transport reached end of stream", connection=self.name)
                    break
                self._route(message)
        except FramingError as e:
            logger.error("Framing failure, closing connection", connection=self.name, error=str(e))
            self._close_reason = e
        except ConnectionError as e:
            logger.warning("Transport read failed", connection=self.name, error=str(e))
            self._close_reason = e
        self._inbox.put_nowait(_END_OF_STREAM)

    def _route(self, message: dict[str, Any]) -> None:
        method = message.get("method")
        if method is not None and "id" in message:
            task = asyncio.create_task(
                self._run_request(message), name=f"{self.name}.request.{method}"
            )
            self._handler_tasks.add(task)
            task.add_done_callback(self._handler_tasks.discard)
        elif method is not None:
            self._queued += 1
            self._inbox.put_nowait(message)
        elif "id" in message:
            self._resolve(message)
        else:
            logger.warning(
                "Dropping message with neither method nor id",
                connection=self.name,
                keys=sorted(message),
            )

    async def _dispatch_loop(self) -> None:
        while True:
            message = await self._inbox.get()
            if message is _END_OF_STREAM:
                break
            await self._run_notification(message)
            self._dispatched += 1
            async with self._progress:
                self._progress.notify_all()
        await self._finish(self._close_reason)

    async def _run_notification(self, message: dict[str, Any]) -> None:
        method = message["method"]
        handler = self._notification_handlers.get(method)
        if handler is None:
            logger.debug("No handler for notification, dropping", connection=self.name, method=method)
            return

        try:
            result = handler(message.get("params"))
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            logger.error(
                "Notification handler failed",
                connection=self.name,
                method=method,
                error=str(e),
                exc_info=True,
            )

    async def _run_request(self, message: dict[str, Any]) -> None:
        method = message["method"]
        request_id = message["id"]
        response: dict[str, Any] = {"jsonrpc": JSONRPC_VERSION, "id": request_id}

        try:
            handler = self._request_handlers.get(method)
            if handler is None:
                raise UnhandledMethod(method)
            result = handler(message.get("params"))
            if inspect.isawaitable(result):
                result = await result
            response["result"] = result
        except UnhandledMethod as e:
            logger.warning("No handler for incoming call", connection=self.name, method=method)
            response["error"] = e.to_error_obj()
        except RemoteError as e:
            logger.warning(
                "Incoming call failed",
                connection=self.name,
                method=method,
                code=e.code,
                error=e.message,
            )
            response["error"] = e.to_error_obj()
        except Exception as e:
            logger.error(
                "Request handler raised",
                connection=self.name,
                method=method,
                error=str(e),
                exc_info=True,
            )
            response["error"] = RemoteError.internal_error({"details": str(e)}).to_error_obj()

        try:
            await self._send(response)
        except ConnectionClosed:
            logger.warning(
                "Could not deliver response, connection closed",
                connection=self.name,
                method=method,
                request_id=request_id,
            )

    def _resolve(self, message: dict[str, Any]) -> None:
        request_id = message.get("id")
        future = self._pending.pop(request_id, None) if isinstance(request_id, int) else None
        if future is None:
            logger.warning(
                "Response for unknown request id", connection=self.name, request_id=request_id
            )
            return
        if not future.done():
            future.set_result((message, self._queued))

    # Lifecycle

    async def close(self) -> None:
        """Stop dispatching and fail every pending call with ConnectionClosed."""
        if self._finished:
            return
        self._closed = True

        current = asyncio.current_task()
        loops = [
            task
            for task in (self._receive_task, self._dispatch_task)
            if task is not None and task is not current and not task.done()
        ]
        for task in loops:
            task.cancel()
        await asyncio.gather(*loops, return_exceptions=True)

        await self._finish(self._close_reason)

    async def wait_closed(self) -> None:
        """Wait until the connection is down.

        Re-raises the FramingError if a corrupt line is what ended it.
        """
        await self._closed_event.wait()
        if isinstance(self._close_reason, FramingError):
            raise self._close_reason

    async def _finish(self, reason: BaseException | None) -> None:
        if self._finished:
            return
        self._closed = True

        current = asyncio.current_task()
        handlers = [task for task in self._handler_tasks if task is not current]
        for task in handlers:
            task.cancel()
        await asyncio.gather(*handlers, return_exceptions=True)

        self._stream.close()

        failed = 0
        for future in self._pending.values():
            if not future.done():
                future.set_exception(ConnectionClosed(reason=reason))
                failed += 1
        self._pending.clear()

        self._finished = True
        self._closed_event.set()
        async with self._progress:
            self._progress.notify_all()
        logger.info(
            "Connection closed",
            connection=self.name,
            failed_calls=failed,
            reason=str(reason) if reason else None,
        )

    async def __aenter__(self) -> "Connection":
        self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()
