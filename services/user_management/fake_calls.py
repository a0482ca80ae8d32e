"""
Fake incoming-call presets.

The client rings on its own; the backend only keeps the caller presets and
builds the "call me right now" preset used from the emergency screen.
"""

import random
import uuid
from typing import List, Optional

EMERGENCY_CALLER_NAMES = ["Mom", "Dad", "Brother"]
MAX_DELAY_SECONDS = 300

TEMPLATES: List[dict] = [
    {
        "template_id": "template_1",
        "caller_name": "Mom",
        "phone": "+1 (555) 123-4567",
        "delay_seconds": 10,
    },
    {
        "template_id": "template_2",
        "caller_name": "Work Emergency",
        "phone": "+1 (555) 987-6543",
        "delay_seconds": 15,
    },
    {
        "template_id": "template_3",
        "caller_name": "Doctor's Office",
        "phone": "+1 (555) 246-8135",
        "delay_seconds": 20,
    },
    {
        "template_id": "template_4",
        "caller_name": "Roommate",
        "phone": "+1 (555) 369-2580",
        "delay_seconds": 5,
    },
]


def random_phone_number(rng: Optional[random.Random] = None) -> str:
    """US-style display number: area code and exchange both in 200-998."""
    rng = rng or random
    area_code = 200 + rng.randrange(799)
    exchange = 200 + rng.randrange(799)
    number = rng.randrange(9999)
    return f"+1 ({area_code}) {exchange}-{number:04d}"


def emergency_fake_call(rng: Optional[random.Random] = None) -> dict:
    """Preset that rings immediately with a plausible family caller."""
    rng = rng or random
    return {
        "config_id": f"emergency_{uuid.uuid4().hex[:8]}",
        "caller_name": rng.choice(EMERGENCY_CALLER_NAMES),
        "phone": random_phone_number(rng),
        "ringtone": "default",
        "delay_seconds": 0,
        "is_enabled": True,
        "avatar_url": None,
    }
