"""Exception taxonomy for the freshness service"""


class FreshnessError(Exception):
    """Base class for all freshness service errors"""

    pass


class NetworkError(FreshnessError):
    """Raised when a remote fetch fails at the transport level (transient)"""

    def __init__(self, url: str, message: str = ""):
        self.url = url
        self.message = message
        super().__init__(f"Failed to fetch {url}: {message}")


class FetchTimeoutError(NetworkError):
    """Raised when a remote fetch times out (transient)"""

    pass


class ContentValidationError(FreshnessError):
    """Raised when fetched content is malformed; requires manual review"""

    def __init__(self, url: str, message: str = ""):
        self.url = url
        self.message = message
        super().__init__(f"Invalid content from {url}: {message}")


class GenerationError(FreshnessError):
    """Raised when the content rewriter fails"""

    pass


class ConcurrencyConflict(FreshnessError):
    """Raised when a conditional state transition lost a race"""

    pass


class ExhaustedRetries(FreshnessError):
    """Raised when an entry has used up all of its attempts"""

    def __init__(self, entry_id: str, attempts: int):
        self.entry_id = entry_id
        self.attempts = attempts
        super().__init__(f"Refresh {entry_id} failed after {attempts} attempts")


class ItemNotTrackedError(FreshnessError):
    """Raised when an item has no freshness record"""

    def __init__(self, item_id: str):
        self.item_id = item_id
        super().__init__(f"Item {item_id} is not tracked")


class ItemAlreadyTrackedError(FreshnessError):
    """Raised when initializing an item that already has a freshness record"""

    def __init__(self, item_id: str):
        self.item_id = item_id
        super().__init__(f"Item {item_id} is already tracked")


class ConfigValidationError(FreshnessError):
    """Raised when a configuration value is rejected"""

    def __init__(self, key: str, message: str):
        self.key = key
        self.message = message
        super().__init__(f"Invalid value for {key}: {message}")


class IntegrityCheckError(FreshnessError):
    """Raised when database integrity check fails"""

    pass


class VersionNotFoundError(FreshnessError):
    """Raised when an item has no content version with the requested number"""

    def __init__(self, item_id: str, version_number: int):
        self.item_id = item_id
        self.version_number = version_number
        super().__init__(f"Item {item_id} has no version {version_number}")
