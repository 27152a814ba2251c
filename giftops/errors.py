class GiftOpsError(Exception):
    """Base class for gift operation failures."""


class ProcessNotFoundError(GiftOpsError):
    def __init__(self, process_id):
        super().__init__(f"Process {process_id} not found")
        self.process_id = process_id


class InvalidRedeemDataError(GiftOpsError):
    pass


class CaptchaModelError(GiftOpsError):
    """The captcha model or its metadata could not be loaded."""
