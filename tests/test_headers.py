from pathlib import Path

import mail_gateway

HEADER = "# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0"


def test_every_module_carries_license_header():
    package_dir = Path(mail_gateway.__file__).parent
    missing = [
        str(path.relative_to(package_dir))
        for path in sorted(package_dir.rglob("*.py"))
        if path.read_text(encoding="utf-8").splitlines()[:1] != [HEADER]
    ]
    assert missing == []
