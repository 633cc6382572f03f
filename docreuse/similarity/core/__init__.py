"""Pure matching, section and scoring logic for one source/candidate pair."""
