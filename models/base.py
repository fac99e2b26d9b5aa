from datetime import datetime, timezone
from sqlalchemy import JSON, Enum
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import declarative_base
import enum

Base = declarative_base()

# JSONB on PostgreSQL, plain JSON elsewhere (SQLite for local runs and tests)
JSONType = JSON().with_variant(JSONB(), "postgresql")


def utcnow() -> datetime:
    """Naive UTC timestamp; every persisted datetime is stored this way."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def enum_column(enum_cls) -> Enum:
    """Store enum values (not member names) so raw SQL predicates can match them."""
    return Enum(
        enum_cls,
        values_callable=lambda members: [m.value for m in members],
        native_enum=False,
        length=20,
    )


# ============================================================================
# ENUMS
# ============================================================================

class RunStatus(str, enum.Enum):
    """Pipeline run status"""
    RUNNING = "running"
    COMMITTED = "committed"
    FAILED = "failed"


class BoundaryType(str, enum.Enum):
    """How a source orders its rows, and so how its watermark compares"""
    TIMESTAMP = "timestamp"
    INTEGER = "integer"
    CURSOR = "cursor"
