"""Bot stage / strategy candidate lifecycle control plane."""
