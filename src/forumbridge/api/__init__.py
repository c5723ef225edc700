"""HTTP API for forumbridge."""
