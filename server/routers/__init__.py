"""HTTP routers for the Perudo server."""
