"""WebSocket handler for real-time event streaming.

This module streams project events (run lifecycle, agent activity, questions,
file changes) to the frontend and answers client pings.
"""

import asyncio
import contextlib

import structlog
from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from events import EventType, get_event_bus

logger = structlog.get_logger(__name__)

websocket_router = APIRouter()


@websocket_router.websocket("/ws/{project_id}")
async def websocket_endpoint(websocket: WebSocket, project_id: str) -> None:
    """WebSocket endpoint for real-time event streaming.

    This endpoint handles bidirectional communication:
    - Server -> Client: Project events, history first
    - Client -> Server: ``ping`` messages, answered with ``pong``

    Args:
        websocket: The WebSocket connection.
        project_id: The project to stream events for.
    """
    await websocket.accept()

    logger.info("websocket_connected", project_id=project_id)

    event_bus = get_event_bus()

    # Subscribe before reading history so nothing published in between is lost.
    queue = event_bus.subscribe(project_id)

    try:
        last_replay_timestamp: float = 0.0
        history = event_bus.get_event_history(project_id)
        if history:
            logger.info(
                "replaying_event_history",
                project_id=project_id,
                event_count=len(history),
            )
            for event in history:
                try:
                    await websocket.send_json(event.model_dump(mode="json"))
                    last_replay_timestamp = event.timestamp
                except WebSocketDisconnect:
                    logger.info("websocket_disconnect_during_replay", project_id=project_id)
                    return
                except Exception as e:
                    logger.error("websocket_replay_error", project_id=project_id, error=str(e))
                    return

        async def send_events() -> None:
            """Forward events from the event bus to the WebSocket client.

            Events with timestamp <= last_replay_timestamp were already sent
            from history.
            """
            try:
                while True:
                    event = await queue.get()
                    if event.type == EventType.PROJECT_CLOSED:
                        logger.info("project_closed_sentinel", project_id=project_id)
                        break

                    if event.timestamp <= last_replay_timestamp:
                        logger.debug(
                            "event_skipped_duplicate",
                            project_id=project_id,
                            event_type=event.type.value,
                        )
                        continue

                    await websocket.send_json(event.model_dump(mode="json"))
                    logger.debug(
                        "event_sent",
                        project_id=project_id,
                        event_type=event.type.value,
                    )
            except WebSocketDisconnect:
                logger.info("websocket_disconnect_during_send", project_id=project_id)
            except Exception as e:
                logger.error("websocket_send_error", project_id=project_id, error=str(e))

        async def receive_commands() -> None:
            """Receive client messages; only ``ping`` is understood."""
            try:
                while True:
                    data = await websocket.receive_json()
                    if not isinstance(data, dict):
                        logger.warning("invalid_ws_message", project_id=project_id)
                        continue

                    command_type = data.get("type")
                    if command_type == "ping":
                        await websocket.send_json(
                            {"type": "pong", "timestamp": data.get("timestamp")}
                        )
                    else:
                        logger.warning(
                            "unknown_command",
                            project_id=project_id,
                            command_type=command_type,
                        )
            except WebSocketDisconnect:
                logger.info("websocket_disconnect_during_receive", project_id=project_id)
            except Exception as e:
                logger.error("websocket_receive_error", project_id=project_id, error=str(e))

        send_task = asyncio.create_task(send_events())
        receive_task = asyncio.create_task(receive_commands())

        # Wait for either task to complete (usually due to disconnect)
        done, pending = await asyncio.wait(
            [send_task, receive_task],
            return_when=asyncio.FIRST_COMPLETED,
        )

        for task in pending:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task

    except WebSocketDisconnect:
        logger.info("websocket_disconnected", project_id=project_id)
    except Exception as e:
        logger.error("websocket_error", project_id=project_id, error=str(e))
    finally:
        event_bus.unsubscribe(project_id, queue)
        logger.info("websocket_cleanup_complete", project_id=project_id)
