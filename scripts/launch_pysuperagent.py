import sys
import runpy

# debugpy puts the real arguments after "--"
if "--" in sys.argv:
    args = sys.argv[sys.argv.index("--") + 1 :]
else:
    args = sys.argv[1:]

sys.argv = ["pysuperagent"] + args

# same as: python -m pysuperagent ...
runpy.run_module("pysuperagent", run_name="__main__")
