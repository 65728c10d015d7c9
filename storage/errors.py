class StoreUnavailableError(Exception):
    """An external store could not be reached or refused the operation."""
