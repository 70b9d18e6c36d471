import pytest

from claridad.maintenance import main, run


class TestRun:
    async def test_all_reports_each_pass(self, services, directory, capsys):
        await directory.create_user(
            "ana@claridad.org", "Ana", neighborhood="Centro", chat_id="507f1f77bcf86cd799439011", onboarded=True
        )
        assert await run("all", services) == 0
        out = capsys.readouterr().out
        assert "migrate: 1 changed, 0 errors" in out
        assert "dedupe: 0 changed, 0 errors" in out
        assert "sync: 0 changed, 0 errors" in out

    async def test_errors_give_nonzero_exit(self, services, directory):
        await directory.create_user(
            "ana@claridad.org", "Ana", neighborhood="Centro", chat_id="507f1f77bcf86cd799439011", onboarded=True
        )
        assert await run("sync", services) == 1

    async def test_sweep(self, services, clock, capsys):
        services.incidents.create("robo", "x", "Centro", "chat_centro", [-57.5, -38.0], active_for_minutes=1)
        clock.advance(minutes=2)
        assert await run("sweep", services) == 0
        assert "sweep: 1 chats had expired incidents" in capsys.readouterr().out


def test_unknown_command_exits():
    with pytest.raises(SystemExit):
        main(["explode"])
