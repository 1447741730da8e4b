import asyncio
import json
from unittest.mock import AsyncMock, MagicMock

import pytest

from shared_py.nats_consumer import process_message


def _make_msg(payload):
    msg = MagicMock()
    msg.subject = "image-normalize"
    msg.data = payload if isinstance(payload, bytes) else json.dumps(payload).encode()
    msg.in_progress = AsyncMock()
    msg.ack = AsyncMock()
    msg.nak = AsyncMock()
    msg.term = AsyncMock()
    return msg


class TestProcessMessage:
    @pytest.mark.asyncio
    async def test_acks_on_success(self):
        msg = _make_msg({"Records": []})
        handler = AsyncMock(return_value="Skipped")

        await process_message(msg, handler, timeout=5, nak_delay=30)

        handler.assert_awaited_once_with({"Records": []})
        msg.in_progress.assert_awaited_once()
        msg.ack.assert_awaited_once()
        msg.nak.assert_not_called()

    @pytest.mark.asyncio
    async def test_naks_on_handler_error(self):
        msg = _make_msg({"Records": []})
        handler = AsyncMock(side_effect=RuntimeError("boom"))

        await process_message(msg, handler, timeout=5, nak_delay=12)

        msg.ack.assert_not_called()
        msg.nak.assert_awaited_once_with(delay=12)

    @pytest.mark.asyncio
    async def test_naks_on_timeout(self):
        msg = _make_msg({"Records": []})

        async def _slow(data):
            await asyncio.sleep(1)

        await process_message(msg, _slow, timeout=0.01, nak_delay=30)

        msg.ack.assert_not_called()
        msg.nak.assert_awaited_once_with(delay=30)

    @pytest.mark.asyncio
    async def test_terminates_undecodable_payload(self):
        msg = _make_msg(b"{not json")
        handler = AsyncMock()

        await process_message(msg, handler, timeout=5, nak_delay=30)

        handler.assert_not_called()
        msg.term.assert_awaited_once()
        msg.nak.assert_not_called()
