# core/message_broker.py - Topic based event broker shared by the routing components

import asyncio
import time
from asyncio import Queue
from enum import Enum
from typing import Dict, Any, Callable, List, Optional
from loguru import logger


class EventType(str, Enum):
    SERVICE_CONNECTED = "service_connected"
    SERVICE_DISCONNECTED = "service_disconnected"
    SERVICE_ERROR = "service_error"
    AGENT_CONNECTED = "agent_connected"
    AGENT_DISCONNECTED = "agent_disconnected"
    AGENT_ERROR = "agent_error"
    AGENT_STATUS_UPDATE = "agent_status_update"
    DECISION_MADE = "decision_made"
    TOOL_CALL_COMPLETED = "tool_call_completed"
    TASK_SUBMITTED = "task_submitted"
    TASK_STARTED = "task_started"
    TASK_COMPLETED = "task_completed"
    TASK_FAILED = "task_failed"
    TASK_CANCELLED = "task_cancelled"
    TASK_PAUSED = "task_paused"
    TASK_RESUMED = "task_resumed"
    TASK_INTERRUPTED = "task_interrupted"
    CHECKPOINT_CREATED = "checkpoint_created"
    SYSTEM_METRICS = "system_metrics"
    SYSTEM_STATUS = "system_status"


def _topic_name(topic) -> str:
    return topic.value if isinstance(topic, Enum) else str(topic)


class MessageBroker:
    def __init__(self, max_queue_size: int = 1000):
        self.topics: Dict[str, Queue] = {}
        self.subscribers: Dict[str, List[Callable]] = {}
        self.processors: Dict[str, asyncio.Task] = {}
        self.max_queue_size = max_queue_size
        self._running = False
        self.message_stats = {
            "total_published": 0,
            "total_processed": 0,
            "total_failed": 0,
            "total_dropped": 0,
            "topics_created": 0,
        }

    @property
    def is_running(self) -> bool:
        return self._running

    async def start(self):
        """Start the message broker"""
        if self._running:
            logger.warning("Message broker is already running")
            return

        self._running = True
        for event_type in EventType:
            self._ensure_topic_exists(event_type.value)

        # Subscribers registered before start need a processor
        for topic, subscribers in self.subscribers.items():
            if subscribers:
                self._ensure_topic_exists(topic)
                self._ensure_topic_processing(topic)

        logger.info(f"Message broker started with {len(self.topics)} topics")

    async def stop(self):
        """Stop the message broker and drop pending messages"""
        if not self._running:
            return

        self._running = False
        logger.info("Stopping message broker...")

        processors = list(self.processors.values())
        for task in processors:
            if not task.done():
                task.cancel()
        if processors:
            await asyncio.gather(*processors, return_exceptions=True)

        self.processors.clear()
        self.topics.clear()
        logger.info("Message broker stopped")

    def _ensure_topic_exists(self, topic: str):
        if topic not in self.topics:
            self.topics[topic] = Queue(maxsize=self.max_queue_size)
            self.subscribers.setdefault(topic, [])
            self.message_stats["topics_created"] += 1
            logger.debug(f"Created topic: {topic}")

    def _ensure_topic_processing(self, topic: str):
        task = self.processors.get(topic)
        if task is None or task.done():
            self.processors[topic] = asyncio.create_task(self._process_topic_messages(topic))
            logger.debug(f"Started message processing task for topic '{topic}'")

    def publish_nowait(self, topic, message: Dict[str, Any]) -> bool:
        """Queue a message on a topic without waiting. Safe to call from sync code."""
        topic = _topic_name(topic)
        if not self._running:
            return False
        if not self.subscribers.get(topic):
            return False

        self._ensure_topic_exists(topic)
        enriched_message = {
            **message,
            "_broker_timestamp": time.time(),
            "_broker_topic": topic,
        }
        try:
            self.topics[topic].put_nowait(enriched_message)
        except asyncio.QueueFull:
            self.message_stats["total_dropped"] += 1
            logger.error(f"Queue full for topic '{topic}'. Message dropped.")
            return False

        self.message_stats["total_published"] += 1
        self._ensure_topic_processing(topic)
        return True

    async def publish(self, topic, message: Dict[str, Any]) -> bool:
        """Publish a message to a topic"""
        return self.publish_nowait(topic, message)

    async def _process_topic_messages(self, topic: str):
        queue = self.topics[topic]
        try:
            while self._running:
                message = await queue.get()
                subscribers = list(self.subscribers.get(topic, []))
                if not subscribers:
                    self.message_stats["total_dropped"] += 1
                    continue
                results = await asyncio.gather(
                    *(self._call_subscriber(s, message, topic) for s in subscribers)
                )
                successful = sum(1 for ok in results if ok)
                self.message_stats["total_processed"] += successful
                self.message_stats["total_failed"] += len(results) - successful
        except asyncio.CancelledError:
            pass
        finally:
            logger.debug(f"Message processor for topic '{topic}' stopped")

    async def _call_subscriber(self, subscriber: Callable, message: Dict[str, Any], topic: str) -> bool:
        try:
            if asyncio.iscoroutinefunction(subscriber):
                await subscriber(message)
            else:
                subscriber(message)
            return True
        except Exception as e:
            logger.error(f"Error calling subscriber for topic '{topic}': {e}")
            return False

    def subscribe(self, topic, callback: Callable) -> bool:
        """Subscribe a sync or async callback to a topic"""
        topic = _topic_name(topic)
        self.subscribers.setdefault(topic, [])
        if callback in self.subscribers[topic]:
            logger.warning(f"Callback already subscribed to topic '{topic}'")
            return False

        self.subscribers[topic].append(callback)
        logger.debug(f"Subscribed to topic '{topic}'. Total subscribers: {len(self.subscribers[topic])}")
        if self._running:
            self._ensure_topic_exists(topic)
            self._ensure_topic_processing(topic)
        return True

    def subscribe_all(self, callback: Callable):
        for event_type in EventType:
            self.subscribe(event_type, callback)

    def unsubscribe(self, topic, callback: Callable) -> bool:
        """Unsubscribe from a topic"""
        topic = _topic_name(topic)
        if callback in self.subscribers.get(topic, []):
            self.subscribers[topic].remove(callback)
            return True
        logger.warning(f"Callback not found in subscribers for topic '{topic}'")
        return False

    def list_topics(self) -> List[str]:
        return list(self.topics.keys())

    def get_topic_stats(self, topic) -> Optional[Dict]:
        topic = _topic_name(topic)
        if topic not in self.topics:
            return None
        queue = self.topics[topic]
        processor = self.processors.get(topic)
        return {
            "topic": topic,
            "queue_size": queue.qsize(),
            "max_queue_size": queue.maxsize,
            "subscribers_count": len(self.subscribers.get(topic, [])),
            "processing": processor is not None and not processor.done(),
        }

    def get_broker_stats(self) -> Dict:
        """Get overall broker statistics"""
        return {
            "running": self._running,
            "total_topics": len(self.topics),
            "total_subscribers": sum(len(subs) for subs in self.subscribers.values()),
            "active_processors": len([t for t in self.processors.values() if not t.done()]),
            "message_stats": self.message_stats.copy(),
        }

    async def health_check(self) -> Dict[str, Any]:
        """Round-trip a message through a scratch topic"""
        test_topic = "health_check_test"
        received = asyncio.Event()

        def test_subscriber(msg):
            received.set()

        try:
            self.subscribe(test_topic, test_subscriber)
            self.publish_nowait(test_topic, {"test": True})
            await asyncio.wait_for(received.wait(), timeout=1.0)
            healthy = True
        except asyncio.TimeoutError:
            healthy = False
        finally:
            self.unsubscribe(test_topic, test_subscriber)

        return {
            "healthy": healthy and self._running,
            "running": self._running,
            "stats": self.get_broker_stats(),
            "timestamp": time.time(),
        }
