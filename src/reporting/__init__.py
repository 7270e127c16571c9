"""Run reports for apply and destroy."""

from reporting.report import RunReport

__all__ = ['RunReport']
