"""
Application Support

Process-level wiring shared by library users and the bundled command line tools.

Key Components:
- config.py: Configuration management using Pydantic settings
- metrics.py: Vendor-agnostic metrics interface with Telegraf and no-op backends
- cli.py: Logging and Sentry setup for command line entry points
"""
