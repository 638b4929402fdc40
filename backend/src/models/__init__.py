"""
SQLAlchemy models for the lifecycle engine.

This module provides the declarative base class and imports all models
to ensure they are registered with SQLAlchemy's metadata.
"""

from sqlalchemy.orm import declarative_base

# Create the declarative base class
# All models will inherit from this Base class
Base = declarative_base()


# Import all models here so they are registered with Base.metadata
# This is required for Alembic autogenerate to detect models

# Aggregates
from backend.src.models.event import Event, EventStatus
from backend.src.models.ticket import Ticket, TicketStatus

# Ledger and durable timers
from backend.src.models.status_transition import StatusTransition
from backend.src.models.scheduled_transition import (
    ScheduledTransition,
    TimerAction,
    TimerStatus,
)

# Export Base and all models
__all__ = [
    "Base",
    "Event",
    "EventStatus",
    "Ticket",
    "TicketStatus",
    "StatusTransition",
    "ScheduledTransition",
    "TimerAction",
    "TimerStatus",
]
