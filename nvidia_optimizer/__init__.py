"""NVIDIA Optimizer - Main package

Installs, switches and removes NVIDIA GPU drivers on Debian systems:
the packaged driver (stable or backports), the official .run installer,
the open-source nouveau fallback, plus the host CUDA Toolkit.
"""

__version__ = "2.3.1"
__package_name__ = "nvidia-optimizer"
