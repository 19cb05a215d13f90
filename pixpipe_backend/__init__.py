"""Engine-independent helpers: stretch math, uniformity, configuration, scanning, run logs."""
