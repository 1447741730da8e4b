"""NATS JetStream consumer that drives the image-normalize job.

run_consumer() is the job's entry point. It pulls bucket notifications from a
durable JetStream consumer and awaits handler(data) for each decoded message.
Handlers must not block the event loop, otherwise HANDLER_TIMEOUT and the
health check stop working while they run.
Messages are acked on success, naked with a delay on failure (redelivery is
the only retry mechanism), and terminated when the payload is not JSON.
A health check HTTP server runs alongside on HEALTH_PORT.
"""

import asyncio
import json
import logging
import os
import signal

import nats
from aiohttp import web

logger = logging.getLogger(__name__)


async def _health_handler(request):
    return web.Response(text="OK")


async def _run_health_server(port: int):
    app = web.Application()
    app.router.add_get("/health", _health_handler)
    runner = web.AppRunner(app)
    await runner.setup()
    site = web.TCPSite(runner, "0.0.0.0", port)
    await site.start()
    return runner


async def process_message(msg, handler, timeout: float, nak_delay: float):
    """Run the handler for one message and settle it (ack, nak or term)."""
    try:
        data = json.loads(msg.data.decode())
    except (UnicodeDecodeError, json.JSONDecodeError):
        logger.error(f"Dropping undecodable message on {msg.subject}")
        await msg.term()
        return

    try:
        await msg.in_progress()
        logger.info(f"Processing message on {msg.subject}")
        status = await asyncio.wait_for(handler(data), timeout=timeout)
        await msg.ack()
        logger.info(f"Message acked: {status}")
    except asyncio.TimeoutError:
        logger.error(f"Handler timed out after {timeout}s, nacking")
        await msg.nak(delay=nak_delay)
    except Exception:
        logger.exception("Handler failed, nacking message")
        await msg.nak(delay=nak_delay)


async def _run(handler, job_name, concurrency):
    nats_url = os.environ.get("NATS_URL", "nats://localhost:4222")
    stream = os.environ.get("NATS_STREAM", "storage-events")
    consumer_name = os.environ.get("NATS_CONSUMER", f"{job_name}-consumer")
    subject_filter = os.environ.get("NATS_SUBJECT_FILTER", job_name)
    health_port = int(os.environ.get("HEALTH_PORT", "8080"))
    timeout = float(os.environ.get("HANDLER_TIMEOUT", "300"))
    nak_delay = float(os.environ.get("NAK_DELAY", "30"))

    logging.basicConfig(level=logging.INFO)
    logger.info(f"Starting {job_name} consumer (stream={stream}, consumer={consumer_name}, filter={subject_filter})")

    health_runner = await _run_health_server(health_port)
    logger.info(f"Health check server running on :{health_port}")

    nc = await nats.connect(nats_url)
    js = nc.jetstream()

    sub = await js.pull_subscribe(
        subject_filter,
        durable=consumer_name,
        stream=stream,
    )

    shutdown = asyncio.Event()

    def _signal_handler():
        logger.info("Received shutdown signal")
        shutdown.set()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, _signal_handler)

    logger.info(f"Pulling messages (concurrency={concurrency})...")

    while not shutdown.is_set():
        try:
            msgs = await sub.fetch(batch=concurrency, timeout=5)
        except nats.errors.TimeoutError:
            continue

        for msg in msgs:
            await process_message(msg, handler, timeout, nak_delay)

    logger.info("Shutting down...")
    await sub.unsubscribe()
    await nc.drain()
    await health_runner.cleanup()
    logger.info("Shutdown complete")


def run_consumer(handler, job_name, concurrency=1):
    """Main entry point. Blocks until SIGTERM/SIGINT."""
    asyncio.run(_run(handler, job_name, concurrency))
