"""almondcloud - front end for the Almond Cloud enterprise engine."""

__version__ = "0.1.0"
__logo__ = "🌰"
