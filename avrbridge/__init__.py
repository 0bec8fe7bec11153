"""avrbridge: Denon/Marantz HTTP receivers as volume controls for a home-audio host."""

__version__ = "1.0.0"
