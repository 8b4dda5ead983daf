"""
portbot - Slack front end for CloudVision wall-jack operations

Operators name a wall jack in a slash command; portbot resolves it to a
switch interface through CloudVision tags and, for port changes, submits,
approves and starts a change control against that interface.
"""

__version__ = "0.1.0"
