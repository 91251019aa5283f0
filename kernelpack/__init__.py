"""kernelpack - build-and-package orchestration for the Linux kernel.

This package builds a kernel source tree once per target platform family
(Debian, RPM, Arch-compatible) and collects the resulting packages into a
namespaced artifact directory, reporting every step and artifact outcome.
"""

__version__ = "0.1.0"
__all__ = ["__version__"]
