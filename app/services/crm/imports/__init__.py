"""History import pipeline: normalize, batch, replay, finalize."""
