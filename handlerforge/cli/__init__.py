"""handlerforge CLI — Typer-based command-line interface.

Provides the ``handlerforge`` command for running an update, inspecting the
handler repository, and marking it as deployed.

All output uses Rich for formatted terminal display.
"""
