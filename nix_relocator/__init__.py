"""nix-relocator.

A build utility that packages a Nix store closure for a relocated store prefix
(e.g. Termux on Android) into a single installer tarball.
"""

__all__: list[str] = ["__version__"]

__version__: str = "0.1.0"
