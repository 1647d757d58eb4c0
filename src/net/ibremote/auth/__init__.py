"""
OAuth Session Management

This package implements the client side of the OAuth 2.0 Authorization Code flow with PKCE
against a single authorization server, together with the session state that has to
survive the round trip through that server.

Key Components:
- pkce.py: Random nonces and S256 code challenges
- store.py: Key-value session store (Redis, memory and Fernet encrypted variants)
- navigation.py: The page's view of its URL and the terminal redirect operation
- oauth.py: Authorization redirect, callback validation and code exchange
- state.py: Explicit login state machine
- session.py: Login-state orchestration, session invalidation and logout

The login flow follows these steps:
1. A state nonce and PKCE verifier are stored and the visitor is redirected
2. The authorization server redirects back with state and code
3. The stored state is compared and removed, the code is exchanged for a token
4. The token is stored and the callback parameters are stripped from the URL
5. The token is destroyed on logout or when the API rejects it
"""
