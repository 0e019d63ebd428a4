"""
Proctoring Risk Engine

Behavioral risk scoring, cross-modal fusion, identity verification and
evidence capture for remote proctored assessments.
"""

__version__ = "1.0.0"
__author__ = "Proctoring Risk Engine Team"
__description__ = "Behavioral risk scoring and evidence capture for remote proctoring"
