"""
OpenTSDB Firehose Nozzle - Cloud Foundry firehose metrics forwarder.

This package drains value metrics and counter events from the Loggregator
firehose, aggregates them per time series and posts them to OpenTSDB over
the HTTP JSON API or the telnet API.
"""

__version__ = "1.0.0"
