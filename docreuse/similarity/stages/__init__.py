"""The three funnel stages of the similarity pipeline."""
