"""
Ephemeris derivation for natal charts.

Turns raw body longitudes and house cusps from an ephemeris provider (or an
external chart service response) into signs, houses, aspects and rulers.
"""
