class NotFoundError(ValueError):
    pass


class InvalidScheduleParameter(ValueError):
    pass


class InvalidAmount(ValueError):
    pass


class OverAllocation(ValueError):
    pass


class AggregationFailure(RuntimeError):
    """Unexpected error while building a report payload."""

    def __init__(self, report_type: str, cause: BaseException) -> None:
        super().__init__(f"{report_type} report failed: {cause}")
        self.report_type = report_type
        self.cause = cause


class DeliveryFailure(RuntimeError):
    pass
