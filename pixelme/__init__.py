"""PixelMe image normalisation and mask-editing core."""
