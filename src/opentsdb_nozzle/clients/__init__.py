"""
Clients for the nozzle's external collaborators:
- firehose: Loggregator traffic controller websocket
- opentsdb: HTTP and telnet posters
- uaa: auth token fetcher
"""
