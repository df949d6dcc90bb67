"""MedPortal: patient records portal with clinician access control."""

__version__ = "0.1.0"
