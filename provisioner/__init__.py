"""Host provisioner - phase-ordered, idempotent machine setup.

Runs ordered phases of installation units on the local host, records
per-unit completion so re-runs resume after the last success, dedupes
package installs across units, and keeps configuration files under a
version-controlled repository via symlinks.
"""

try:
    from importlib.metadata import version

    __version__ = version("host-provisioner")
except Exception:
    __version__ = "0.0.0.dev0"

__all__ = ["__version__"]
