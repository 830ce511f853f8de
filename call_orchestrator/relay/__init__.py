"""Gateway media-stream to conversational-agent audio relay."""
