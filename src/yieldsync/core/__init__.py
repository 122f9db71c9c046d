"""
YieldSync core: consensus, task lifecycle, challenges, slashing and the
position adjustment calculator.
"""
