class EconomyError(Exception):
    pass


class StoreUnavailableError(EconomyError):
    """The relational store could not be reached; nothing was written."""


class InvalidAmountError(EconomyError):
    pass


class InvalidWalletError(EconomyError):
    pass


class ReferralNotFoundError(EconomyError):
    pass


class ReferralNotEligibleError(ReferralNotFoundError):
    pass


class SelfReferralError(EconomyError):
    pass


class ReportError(EconomyError):
    pass


class SelfReportError(ReportError):
    pass


class InvalidCategoryError(ReportError):
    pass


class DuplicateReportError(ReportError):
    pass
