"""Analysis core — index, rules, topology, traffic, posture."""
