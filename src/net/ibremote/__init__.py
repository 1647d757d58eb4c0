"""
ibremote - Remote control session manager

This package implements the session layer of a small remote-control web application: it
logs the visitor into a single OAuth 2.0 authorization server using the Authorization Code
flow with PKCE, keeps the resulting bearer token in a per-browser store, and issues
authenticated API calls that survive rate limiting and session expiry.

Key Components:
- auth: PKCE handshake, per-browser session store, callback handling and login orchestration
- api: Middleware chain HTTP client and the remote-control API calls made with it
- app: Web application layer with configuration, metrics, handlers and the CLI entry point

Architecture Overview:
1. Login Flow:
   - A page load probes the login state once
   - A pending authorization callback is consumed first and exchanged for a token
   - Otherwise a stored token is reused, or the visitor is redirected to log in

2. API Access:
   - Every call carries the stored bearer token
   - 429 responses are retried after the server supplied delay
   - 401 responses invalidate the session and send the visitor back to the app root

3. Logout:
   - Visitors who arrived from the hosted site are returned to it
   - Everyone else lands on the application root
"""
