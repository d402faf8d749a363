"""Smoke test for the command-line walkthrough."""

import pytest

from orgaccess.main import demo


@pytest.mark.asyncio
async def test_demo_runs(capsys):
    await demo()
    
    out = capsys.readouterr().out
    assert "Reissued claims: ['O1']" in out
    assert "requires ADMIN     -> INSUFFICIENT_ROLE" in out
    assert "membership.role_changed" in out
