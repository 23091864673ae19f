# Import all handlers so they register themselves.
from . import progress_calculation  # noqa: F401
