from diu.cli import app

app()
