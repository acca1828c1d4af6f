"""Numeric process exit codes following `clig.dev <https://clig.dev/>`_ conventions.

Each constant maps to a specific error category and is referenced by the
corresponding :class:`~cloudlogin.exceptions.CloudLoginError` subclass.
Shell wrappers can inspect the exit code to tell a rejected sign-in from a
busy callback port without parsing stderr.

Example::

    $ cloudlogin auth refresh
    $ echo $?
    3   # EXIT_AUTH_FAILURE -- the session could not be refreshed
"""

EXIT_SUCCESS = 0
"""The command completed successfully."""

EXIT_GENERIC_FAILURE = 1
"""An unclassified error occurred."""

EXIT_INVALID_USAGE = 2
"""The command was invoked with invalid arguments or missing required parameters."""

EXIT_AUTH_FAILURE = 3
"""Authentication failed, was cancelled, or the session has expired."""

EXIT_CALLBACK_SERVER_ERROR = 8
"""The loopback callback listener could not be started."""

EXIT_SECRET_STORE_ERROR = 9
"""The secret store could not be read or written."""
