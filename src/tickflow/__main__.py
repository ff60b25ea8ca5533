from tickflow.main import run

run()
