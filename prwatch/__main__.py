from prwatch.worker import cli

if __name__ == "__main__":
    cli()
