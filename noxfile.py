import nox


@nox.session(python=["3.10"])
def tests(session):
    session.install("-e", ".[test]")
    session.run(
        "coverage",
        "run",
        "-m",
        "pytest",
        "--benchmark-warmup",
        "on",
        "--benchmark-disable-gc",
    )
    session.run("coverage", "report")


@nox.session
def lint(session):
    session.install("black", "autoflake8", "flake8")
    session.run("black", ".")
    session.run(
        "autoflake8",
        "--in-place",
        "--recursive",
        "--exclude",
        "__init__.py",
        ".",
    )
    session.run("flake8", ".")


@nox.session
def build(session):
    session.install("build")
    session.run("python", "-m", "build")
