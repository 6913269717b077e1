"""Shared fixtures for lockaudit tests."""

import pytest

CRATES_IO = "registry+https://github.com/rust-lang/crates.io-index"

ADVISORY_TEMPLATE = """\
```toml
[advisory]
id = "{id}"
package = "{package}"
date = "2021-01-01"
url = "https://example.org/{id}"
{extra}
[versions]
patched = {patched}
{versions_extra}
```

# {title}

{description}
"""


@pytest.fixture
def write_advisory():
    """Factory writing a RustSec-style Markdown advisory into a database directory."""
    def write(database, id, package, patched=(), title="Test advisory", description="Details.",
              extra="", versions_extra=""):
        crate_dir = database / "crates" / package
        crate_dir.mkdir(parents=True, exist_ok=True)
        patched_toml = "[" + ", ".join(f'"{item}"' for item in patched) + "]"
        path = crate_dir / f"{id}.md"
        path.write_text(ADVISORY_TEMPLATE.format(
            id=id,
            package=package,
            patched=patched_toml,
            title=title,
            description=description,
            extra=extra,
            versions_extra=versions_extra,
        ))
        return path
    return write


@pytest.fixture
def advisory_db(tmp_path, write_advisory):
    """Create a small advisory database with one vulnerability and one notice."""
    database = tmp_path / "advisory-db"
    database.mkdir()
    (database / "README.md").write_text("# Advisory database\n\nNot an advisory.\n")
    write_advisory(
        database,
        "RUSTSEC-2017-0004",
        "base64",
        patched=[">= 0.5.2"],
        title="Integer overflow leads to heap-based buffer overflow in encode_config_buf",
        extra='aliases = ["CVE-2017-1000430"]\ncvss = "CVSS:3.1/AV:N/AC:L/PR:N/UI:N/S:U/C:H/I:H/A:H"',
    )
    write_advisory(
        database,
        "RUSTSEC-2020-0036",
        "failure",
        title="failure is officially deprecated/unmaintained",
        extra='informational = "unmaintained"',
    )
    return database


def cargo_lock(*packages, version=3):
    """Render a Cargo.lock document for (name, version[, source]) tuples."""
    lines = []
    if version is not None:
        lines.append(f"version = {version}\n")
    for package in packages:
        name, pkg_version = package[0], package[1]
        source = package[2] if len(package) > 2 else CRATES_IO
        lines.append("[[package]]")
        lines.append(f'name = "{name}"')
        lines.append(f'version = "{pkg_version}"')
        if source:
            lines.append(f'source = "{source}"')
        lines.append("")
    return "\n".join(lines)


@pytest.fixture
def make_lockfile_text():
    return cargo_lock


@pytest.fixture
def vulnerable_project(tmp_path, make_lockfile_text):
    project = tmp_path / "vulnerable"
    project.mkdir()
    (project / "Cargo.lock").write_text(make_lockfile_text(
        ("vulnerable-app", "0.1.0", None),
        ("base64", "0.5.1"),
        ("serde", "1.0.100"),
    ))
    return project


@pytest.fixture
def secure_project(tmp_path, make_lockfile_text):
    project = tmp_path / "secure"
    project.mkdir()
    (project / "Cargo.lock").write_text(make_lockfile_text(
        ("secure-app", "0.1.0", None),
        ("base64", "0.13.0"),
    ))
    return project
