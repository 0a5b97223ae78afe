class DomainError(Exception):
    """Base class for failures local to a single booking-engine operation."""


class InvalidWindowError(DomainError):
    pass


class UnitUnavailableError(DomainError):
    pass


class InvalidOfferError(DomainError):
    pass


class InsufficientCreditsError(DomainError):
    pass


class SlotUnavailableError(DomainError):
    pass


class LaneTakenError(DomainError):
    """A storage lane was claimed by a concurrent writer; callers try the next lane."""


class MalformedUsageRecordError(DomainError):
    pass
