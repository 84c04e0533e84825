from bidsync.orchestrator.bid_controller import BidLifecycleController, KeyState

__all__ = ["BidLifecycleController", "KeyState"]
