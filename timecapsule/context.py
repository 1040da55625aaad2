"""Explicit collaborator bundle handed to every core component."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable

from .logger import get_logger
from .mailer import MailTransportBase
from .models import utc_now
from .persistence import ScheduleStore
from .prometheus import DeliveryMetrics
from .storage import ObjectStoreBase


@dataclass
class DeliveryContext:
    """Handles to the schedule store, object store and mail transport.

    Tests build one per case with doubles in place of the real collaborators;
    ``clock`` must return aware UTC datetimes.
    """

    store: ScheduleStore
    objects: ObjectStoreBase
    transport: MailTransportBase
    metrics: DeliveryMetrics = field(default_factory=DeliveryMetrics)
    clock: Callable[[], datetime] = utc_now
    logger: logging.Logger = field(default_factory=get_logger)
