"""Pure analysis helpers: content hashing, prompt assembly and output recovery."""
