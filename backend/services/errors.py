class PopulationError(RuntimeError):
    """Structural failure that aborts a population run.

    Per-token and per-wallet failures never raise; they are recorded in the
    run's error log instead. This is reserved for failures that would make
    the cached result wrong (no supply, missing log ranges, ownership that
    contradicts the on-chain supply).
    """

    def __init__(self, message: str, *, phase: str = "populate", rate_limited: bool = False):
        super().__init__(message)
        self.phase = phase
        self.rate_limited = rate_limited
