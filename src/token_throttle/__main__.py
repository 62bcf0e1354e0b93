from __future__ import annotations

from token_throttle.replay_tool import main

if __name__ == "__main__":
    main()
