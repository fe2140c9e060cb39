class AggregatorError(Exception):
    pass

class FeedUnavailable(AggregatorError):
    def __init__(self, source_name: str, message: str):
        super().__init__(f"Feed unavailable for {source_name}: {message}")
        self.source_name = source_name

class SourceNotFound(FeedUnavailable):
    def __init__(self, source_name: str):
        super().__init__(source_name, "source is not configured or not active")

class TeardownFault(AggregatorError):
    """Describes a source worker's fetch pool failing to shut down cleanly.

    Recorded on the source result and logged as a warning; never raised.
    """

    def __init__(self, source_name: str, cause: BaseException):
        super().__init__(f"Teardown failed for {source_name}: {cause}")
        self.source_name = source_name
        self.cause = cause

class InvalidTriggerRequest(AggregatorError):
    pass
