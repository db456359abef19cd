from datetime import datetime, timezone

FROZEN_NOW = datetime(2026, 3, 14, 9, 30, tzinfo=timezone.utc)

ORGANIZATION_SECTION = {
    "organization_name": "Robotics Club",
    "organization_type": "school-based",
    "contact_email": "robotics@example.edu",
}

EVENT_SECTION = {
    "event_name": "Robotics Expo",
    "event_venue": "Main Hall",
    "event_start_date": "2026-03-01",
    "event_end_date": "2026-03-02",
    "event_mode": "offline",
}


class FrozenClock:
    def __init__(self, now: datetime = FROZEN_NOW) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now


def actor_headers(actor_id: str, role: str) -> dict[str, str]:
    return {"X-Actor-Id": actor_id, "X-Actor-Role": role}
