"""Local pixel processing: orientation, normalisation, masks and rasters."""
