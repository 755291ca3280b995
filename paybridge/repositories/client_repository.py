from datetime import datetime
from uuid import UUID

from sqlalchemy.orm import Session

from paybridge.models.client import Client


class ClientRepository:
    def __init__(self, db: Session):
        self.db = db

    def get_by_id(self, client_id: UUID) -> Client | None:
        return self.db.query(Client).filter(Client.id == client_id).first()

    def touch_last_payment(self, client_id: UUID, paid_at: datetime, commit: bool = True) -> None:
        """Stamp the client's most recent completed payment."""
        self.db.query(Client).filter(Client.id == client_id).update(
            {Client.last_payment_at: paid_at}, synchronize_session="fetch"
        )
        if commit:
            self.db.commit()
