class TokenExchangeException(Exception):
    """
    Exception raised when an authorization code cannot be exchanged for a token.

    Codes are single use, so none of these failures are retried. The static methods
    create specific instances with stable error codes.
    """

    @staticmethod
    def transport_failed(reason: str) -> "TokenExchangeException":
        """The token endpoint could not be reached."""
        return TokenExchangeException(
            f"error-session-1000 Token endpoint request failed: {reason}"
        )

    @staticmethod
    def invalid_status(status: int) -> "TokenExchangeException":
        """The token endpoint answered with a non-success status."""
        return TokenExchangeException(
            f"error-session-1001 Token endpoint returned status {status}"
        )

    @staticmethod
    def invalid_body() -> "TokenExchangeException":
        """The token endpoint response was not a JSON object."""
        return TokenExchangeException(
            "error-session-1002 Token endpoint response is not a JSON object"
        )

    @staticmethod
    def access_token_missing() -> "TokenExchangeException":
        """The token endpoint response did not contain an access token."""
        return TokenExchangeException(
            "error-session-1003 Token endpoint response missing access_token"
        )
