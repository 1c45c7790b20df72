from ralph_loop.main import ralph_loop

if __name__ == "__main__":  # pragma: no cover
    ralph_loop()
