"""Urban form metrics for GHSL urban centers: compactness, density gradient, weighted density."""
