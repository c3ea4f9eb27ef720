"""
orbitd - keep running containers on the newest acceptable image build.

Containers are recreated with their full configuration whenever the image
their policy allows has changed, and restored if the replacement fails.
"""

__version__ = "1.0.0"
