from machinehead.cli import cli

cli()
