"""
Time resolution for posted samples

A time may arrive as a UNIX timestamp (number or numeric string) or as a
date-time string. Strings are parsed locale-free; naive values are UTC.
"""
from datetime import timezone
from typing import Any, Callable, Optional
import math
import time as _time

from dateutil import parser as dtparser

from telemetry_ingest.services.numeric import is_numeric

Clock = Callable[[], float]


class TimeResolver:
    
    def __init__(self, clock: Clock = _time.time):
        self.clock = clock
    
    def now(self) -> int:
        return int(self.clock())
    
    def parse(self, value: Any, fallback_now: bool = True) -> Optional[int]:
        """
        Convert one time reference to UNIX seconds
        
        Returns now (or None when fallback_now is False) if the value is
        missing or cannot be understood.
        """
        if value is None:
            return self.now() if fallback_now else None
        
        if is_numeric(value):
            number = float(value)
            if not math.isinf(number) and not math.isnan(number):
                return int(number)
        
        if isinstance(value, str) and value.strip():
            try:
                parsed = dtparser.parse(value)
            except (ValueError, OverflowError):
                parsed = None
            if parsed is not None:
                if parsed.tzinfo is None:
                    parsed = parsed.replace(tzinfo=timezone.utc)
                return int(parsed.timestamp())
        
        return self.now() if fallback_now else None
    
    def resolve(self, explicit: Any = None, embedded: Any = None) -> int:
        """
        Single-post time: request parameter > payload time > now
        """
        if explicit is not None:
            return self.parse(explicit)
        if embedded is not None:
            return self.parse(embedded)
        return self.now()
