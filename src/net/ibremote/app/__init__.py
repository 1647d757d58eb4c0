"""
ibremote Application Layer

This package implements the web application layer for the ibremote service, handling HTTP
requests and responses using the aiohttp framework.

Key Components:
- cli.py: Entry point for running the application
- server.py: Web server configuration and middleware setup
- config.py: Configuration management using Pydantic settings
- metrics.py: Vendor-agnostic metrics clients
- handlers/: Request handlers for the page, login, logout and remote-control endpoints

The application uses several middleware layers:
- Sentry middleware for error reporting
- Statsd middleware for metrics collection
- Browser session middleware, scoping the session store to one browser via a cookie
- Navigation middleware, turning terminal page navigation into HTTP redirects
"""
