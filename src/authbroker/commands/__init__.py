"""Built-in CLI commands for authbroker.

* :mod:`~authbroker.commands.auth` -- sign in, import an external login,
  inspect the current credential, and sign out.

Each command is a plain callback function registered directly on the root
app in :mod:`authbroker.app`.
"""
