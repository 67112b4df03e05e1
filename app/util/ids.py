from __future__ import annotations

import sys
import uuid

from sqlalchemy.orm import Session

from app.core.db import SessionLocal


def new_uuid() -> str:
    return str(uuid.uuid4())


def seed(count: int = 5) -> None:
    """Queue a handful of PENDING communications for a local demo campaign."""
    from app.delivery.store import create_communication

    campaign_id = new_uuid()
    db: Session = SessionLocal()
    try:
        for i in range(count):
            create_communication(
                db,
                campaign_id=campaign_id,
                customer_id=new_uuid(),
                customer_email=f"customer{i}@example.com",
                customer_name=f"Customer {i}",
                message_text=f"Hi Customer {i}, here is 10% off your next order.",
                campaign_name="seed-campaign",
                campaign_type="PROMOTIONAL",
            )
        db.commit()
        print(campaign_id)
    finally:
        db.close()


if __name__ == "__main__":
    seed(int(sys.argv[1]) if len(sys.argv) > 1 else 5)
