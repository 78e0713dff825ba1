"""
Registrar: course-section enrollment and waitlist core.

Allocates a section's seats to competing registration requests, keeps a FIFO
waitlist per section, and gives administrators an audited override path that
never corrupts the shared seat counters.
"""

__version__ = "1.0.0"
__author__ = "Registrar Development Team"
__description__ = "Course-section enrollment, waitlist and override core"
