"""webperf - repeatable Lighthouse measurements against locally served dev stacks."""

__version__ = "0.1.0"
