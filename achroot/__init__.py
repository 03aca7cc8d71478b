"""
achroot - provision a minimal Alpine Linux chroot, optionally for a foreign
architecture, and generate the scripts used to enter and destroy it.
"""

VERSION = "0.14.0"
