from spresso.auth.token_provider import AccessToken, TokenProvider, TokenProviderOptions

__all__ = ["AccessToken", "TokenProvider", "TokenProviderOptions"]
