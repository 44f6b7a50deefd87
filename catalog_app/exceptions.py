class CatalogError(Exception):
    """Base class for application-specific errors."""
    pass

class ConfigError(CatalogError):
    """Errors related to configuration loading or validation."""
    pass

class MetadataError(CatalogError):
    """Errors related to fetching or processing metadata."""
    pass

class ProviderError(MetadataError):
    """A metadata provider request failed (network, HTTP status or bad payload)."""
    def __init__(self, message: str, status_code: int = 0):
        super().__init__(message)
        self.status_code = status_code

class RateLimitError(ProviderError):
    """Provider answered HTTP 429."""
    pass

class ScanError(CatalogError):
    """Errors while walking a library folder."""
    pass

class PersistenceError(CatalogError):
    """Errors reading from or writing to the library database."""
    pass

class FolderNotFoundError(CatalogError):
    """Requested library folder does not exist in the catalog."""
    pass
