"""forumbridge - migrate XenForo forum threads into GitHub Discussions."""

__version__ = "0.1.0"
