"""Column types shared by the AppForge models"""
import uuid

from sqlalchemy import String, TypeDecorator


def generate_uuid() -> str:
    return str(uuid.uuid4())


class GUID(TypeDecorator):
    """
    UUID primary/foreign keys kept as canonical 36-char strings.

    Accepts UUID objects or strings on the way in and always hands back
    strings, so ids compare equal whether they came from a URL path, a
    Celery payload or the database.
    """
    impl = String(36)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if isinstance(value, uuid.UUID):
            return str(value)
        return str(value).strip().lower()

    def process_result_value(self, value, dialect):
        return None if value is None else str(value)
