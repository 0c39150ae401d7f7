from .cli import testfarm

testfarm()
