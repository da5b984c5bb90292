# region ---------- Chapter 1: Imports ----------

import argparse
import json
import os
import uuid

from functions import MemorySessionStore, UpstreamRequestError, build_transport, list_states

# endregion Imports


# region ---------- Chapter 2: Main Function for CLI ----------


def main(argv=None):
    """Main function to parse arguments in the cli."""
    parser = argparse.ArgumentParser(description="eCourts session relay")

    # Argument: Bind address for the API server
    parser.add_argument("--host", default=os.getenv("HOST", "127.0.0.1"), help="Host to bind")
    parser.add_argument(
        "--port", type=int, default=int(os.getenv("PORT", "5000")), help="Port to bind"
    )

    # Argument: Flask debug mode
    parser.add_argument("--debug", action="store_true", help="Run Flask in debug mode")

    # Argument: One-shot state listing instead of serving
    parser.add_argument(
        "--list-states",
        action="store_true",
        help="Print the states from the eCourts portal and exit",
    )

    args = parser.parse_args(argv)

    if args.list_states:
        store = MemorySessionStore()
        try:
            states = list_states(store, uuid.uuid4().hex, build_transport())
        except UpstreamRequestError as e:
            parser.exit(1, f"Could not fetch states: {e.message}\n")
        print(json.dumps(states, ensure_ascii=False, indent=2))
        return 0

    from app import create_app

    app = create_app()
    # threaded: one worker thread per inbound request, no shared locks
    app.run(host=args.host, port=args.port, debug=args.debug, threaded=True)
    return 0


# endregion Main Function for CLI

if __name__ == "__main__":
    main()
