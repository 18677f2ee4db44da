"""
Cookie collection: visit jobs, challenge detection, the cookie store and
the single-flight collection scheduler.
"""
