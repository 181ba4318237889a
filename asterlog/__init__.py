"""
asterlog - Network Traffic Capture Logger with ASTERIX decoding.

asterlog listens on TCP, UDP and TLS ports, writes every received payload to a rotating
log file, and annotates payloads that look like ASTERIX surveillance data (as used in
air-traffic data feeds) with a structural decode. It also exposes an inspection API and
an MCP server interface for AI agents.
"""
