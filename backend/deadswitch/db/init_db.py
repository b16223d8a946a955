from deadswitch.db.session import engine
from deadswitch.models import message  # noqa: F401
from deadswitch.models import condition  # noqa: F401
from deadswitch.models import reminder_schedule  # noqa: F401
from deadswitch.models import check_in  # noqa: F401
from deadswitch.models import delivered_message  # noqa: F401
from deadswitch.models import notification  # noqa: F401
from deadswitch.models.base import Base

def create_tables():
    """Create every table for local runs and tests; deployments use Alembic."""
    Base.metadata.create_all(bind=engine)
