"""Domain snapshots and the parsers mapping backend JSON onto them."""
