class RelayError(Exception):
    """
    base class for failures that stop a call from being forwarded.
    """


class MissingCredentialError(RelayError):
    """
    raised when no provider API key is configured.
    """

    def __init__(self) -> "None":
        super().__init__(
            "ANTHROPIC_API_KEY is not set; the relay cannot forward without it."
        )


class InvalidRequestError(RelayError):
    """
    raised when the caller's body is not a JSON object.
    """


class ForwardError(RelayError):
    """
    raised when the upstream connection fails or breaks
    before a response is available.
    """
