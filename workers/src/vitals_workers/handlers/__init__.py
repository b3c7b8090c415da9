# Import all handlers so they register themselves.
from . import webhook_processing  # noqa: F401
from . import confidence_calculation  # noqa: F401
from . import terra_backfill  # noqa: F401
from . import maintenance  # noqa: F401
