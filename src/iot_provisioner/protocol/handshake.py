"""
Serial prompt/answer handshake engine.

Scripts a conversation with device firmware that prints prompts and expects
newline-terminated answers. Steps run strictly one at a time: a step's data
listener is attached when the step starts and removed when it settles, so
anything the device prints between two steps is not seen by either.

A connection is any object providing:
    is_open                                  -> bool
    await open() / await close()
    subscribe(on_data, on_error)             -> unsubscribe callable
    await write(data) / await drain() / await flush()

SerialLink is the pyserial implementation.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import List, Optional, Sequence

from iot_provisioner.errors import HandshakeTimeout

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class HandshakeStep:
    """
    One prompt/answer exchange.

    Attributes:
        prompt: Substring to wait for, or None to answer immediately
        answer: Bytes to send once the prompt is seen, or None to just wait
        timeout: Seconds before the step gives up (None waits forever)
        always_resolve: On timeout, settle with None instead of failing
    """
    prompt: Optional[str] = None
    answer: Optional[bytes] = None
    timeout: Optional[float] = None
    always_resolve: bool = False


async def run_step(
    connection,
    prompt: Optional[str] = None,
    answer: Optional[bytes] = None,
    timeout: Optional[float] = None,
    always_resolve: bool = False,
) -> Optional[str]:
    """
    Run a single handshake step.

    With a prompt, collects inbound chunks from the moment the step starts
    until the collected text contains the prompt (firmware output may arrive
    split across reads), then (if an answer is set) flushes, writes the
    answer and waits for drain.
    Without a prompt, writes the answer immediately and settles on drain.

    Returns:
        Text received by this step once it matched the prompt (decoded), ""
        for steps without a prompt, or None when the step timed out with
        always_resolve set.

    Raises:
        HandshakeTimeout: If the step timed out without always_resolve
        SerialLinkError: If the connection failed while waiting
    """
    if prompt is None and answer is None:
        return ""

    loop = asyncio.get_running_loop()
    matched = loop.create_future()
    received = bytearray()

    def on_data(chunk: bytes) -> None:
        if matched.done():
            return
        received.extend(chunk)
        text = received.decode("utf-8", errors="replace")
        if prompt in text:
            matched.set_result(text)

    def on_error(error: Exception) -> None:
        if not matched.done():
            matched.set_exception(error)

    async def exchange() -> str:
        text = ""
        if prompt is not None:
            text = await matched
            logger.debug(f"Matched prompt {prompt!r}")
            if answer is not None:
                await connection.flush()
        if answer is not None:
            await connection.write(answer)
            await connection.drain()
        return text

    unsubscribe = connection.subscribe(on_data, on_error) if prompt is not None else None
    try:
        if timeout is None:
            return await exchange()
        return await asyncio.wait_for(exchange(), timeout)
    except asyncio.TimeoutError:
        if always_resolve:
            logger.debug(f"No {prompt!r} within {timeout}s, continuing")
            return None
        target = repr(prompt) if prompt is not None else "drain"
        raise HandshakeTimeout(f"Serial timed out waiting for {target}") from None
    finally:
        if unsubscribe is not None:
            unsubscribe()
        if not matched.done():
            matched.cancel()


class HandshakeSession:
    """
    Ordered handshake steps bound to one serial connection.

    The connection is closed on every exit path: success, failure or
    cancellation.

    Example:
        async with HandshakeSession(link) as session:
            await session.run_step(HandshakeStep(prompt="SSID:", answer=b"home\\n", timeout=5))
    """

    def __init__(self, connection, steps: Optional[Sequence[HandshakeStep]] = None):
        self.connection = connection
        self.steps = list(steps or [])

    async def __aenter__(self) -> "HandshakeSession":
        if not self.connection.is_open:
            try:
                await self.connection.open()
            except BaseException:
                await self.close()
                raise
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    async def close(self) -> None:
        await self.connection.close()

    async def run_step(self, step: HandshakeStep) -> Optional[str]:
        return await run_step(
            self.connection,
            prompt=step.prompt,
            answer=step.answer,
            timeout=step.timeout,
            always_resolve=step.always_resolve,
        )

    async def run(self) -> List[Optional[str]]:
        """Run all steps in order and close the connection."""
        async with self:
            results = []
            for step in self.steps:
                results.append(await self.run_step(step))
            return results
