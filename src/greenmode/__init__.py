"""Load-driven power mode switching with hysteresis."""
