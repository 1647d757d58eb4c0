"""
Resource API Access

This package provides the HTTP client used for every call to the resource API once the
visitor holds an access token.

Key Components:
- chain.py: Middleware chain client (metrics, rate limit retry, bearer token, multipart)
- client.py: ApiClient, handling 401 and 403 responses on top of the chain
- remote.py: The remote-control calls the application makes
"""
