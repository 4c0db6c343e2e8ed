"""HTTP transport used by the command gateway.

The transport only moves bytes: it attaches the capability token and returns
raw status/body pairs. It never touches call-control state.
"""
