"""Dataclips and manual-run input selection."""

from flowdesk.invocation.dataclips import DataclipStore, parse_filters
from flowdesk.invocation.manual_run import search_selectable_dataclips

__all__ = ["DataclipStore", "parse_filters", "search_selectable_dataclips"]
