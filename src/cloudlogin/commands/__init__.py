"""Built-in CLI sub-commands for cloudlogin.

* :mod:`~cloudlogin.commands.auth` -- sign in, inspect, refresh, and sign
  out, plus the ``cloudlogin://`` callback entry point.

Each module exports a :class:`typer.Typer` sub-application registered on the
root app by :func:`cloudlogin.app._register_commands`.
"""
