import sys

#-----------------------------------------------------------------------------

USAGE = f"Usage: python {sys.argv[0]} [--only hierarchy|analytics] [config_files]\n"

#-----------------------------------------------------------------------------

def parse_args(argv: list[str]) -> tuple[list[str], str]:
    yaml_filenames: list[str] = []
    only = ""

    i = 0
    while i < len(argv):
        arg = argv[i]
        if arg == "--only":
            if i + 1 >= len(argv):
                raise ValueError("--only needs a value.")
            only = argv[i + 1]
            i += 2
            continue
        if arg.startswith("--only="):
            only = arg.split("=", 1)[1]
        elif arg.startswith("-"):
            raise ValueError(f"Unknown option: {arg}")
        else:
            yaml_filenames.append(arg)
        i += 1

    return yaml_filenames, only


async def main() -> int:
    import asyncio, logging, signal

    from assettree.errors import ConfigurationError
    from assettree.service import Service

    try:
        yaml_filenames, only = parse_args(sys.argv[1:])
    except ValueError as e:
        print(f"{str(e)}\n{USAGE}")
        return 2

    if not yaml_filenames:
        print(USAGE)

    stop = asyncio.Event()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:
            # Windows event loops have no signal handlers; Ctrl+C raises KeyboardInterrupt instead.
            pass

    try:
        await Service.start(yaml_files=yaml_filenames, only=only, stop=stop)

    except ConfigurationError as e:
        print(f"Configuration error: {e.user_message or str(e)}\n{USAGE}")
        return 2

    except Exception as e:
        logging.critical(f"Service failed: {str(e)}", exc_info=True)
        return 1

    return 0

#-----------------------------------------------------------------------------

if __name__ == "__main__":
    import asyncio
    if sys.platform == "win32":
        asyncio.set_event_loop_policy(asyncio.WindowsSelectorEventLoopPolicy())

    try:
        sys.exit(asyncio.run(main()))
    except KeyboardInterrupt:
        sys.exit(130)

#-----------------------------------------------------------------------------
