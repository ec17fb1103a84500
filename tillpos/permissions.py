# Overview: Permission strings understood by the access gate.

# Sell from a location other than the caller's default
POS_ANY_LOCATION = "pos:any_location"

# Move stock between locations
INVENTORY_MOVE = "inventory:move"

ALL_PERMISSIONS = (POS_ANY_LOCATION, INVENTORY_MOVE)
