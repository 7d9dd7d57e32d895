class HourmeterError(Exception):
    """
    base class for every failure hourmeter reports to its caller.
    """


class ConfigError(HourmeterError):
    pass


class HourSelectionError(HourmeterError):
    """
    raised while turning CLI hour flags into a concrete list of hours.
    Always raised before any transcript is read.
    """


class InvalidHourError(HourSelectionError):
    pass


class InvalidRangeError(HourSelectionError):
    pass


class IncompleteRangeError(HourSelectionError):
    pass


class EmptyHistoryError(HourSelectionError):
    pass


class RangeTooLargeError(HourmeterError):
    pass


class TranscriptReadError(HourmeterError):
    def __init__(self, path: "str", cause: "BaseException") -> "None":
        super().__init__(f"Failed to read transcript {path}: {cause}")
        self.path = path
        self.cause = cause


class UploadFailedError(HourmeterError):
    def __init__(self, message: "str", status: "int | None" = None) -> "None":
        super().__init__(message)
        self.status = status
