"""Collaborative editing: topic pub/sub and presence tracking."""

from flowdesk.collaboration.presence import Presence
from flowdesk.collaboration.pubsub import PubSub, project_topic, run_topic, workflow_topic

__all__ = ["Presence", "PubSub", "project_topic", "run_topic", "workflow_topic"]
