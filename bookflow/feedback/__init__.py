from bookflow.feedback.rendezvous import FeedbackRendezvous

__all__ = ["FeedbackRendezvous"]
