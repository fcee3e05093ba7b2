# This module handles Context engineering

# +---------------------+      +---------------------+      +---------------------+
# |   Project context   |      |       Memory        |      |  Knowledge sources  |
# |---------------------|      |---------------------|      |---------------------|
# | core-context/*.md   |      | Short-term entries  |      | Project documents   |
# | Goals, focus, tasks |      | Action history      |      | Web / code / files  |
# | Decisions, patterns |      | User profile        |      | Library docs        |
# +---------------------+      +---------------------+      +---------------------+
#            \                           |                            /
#             \                          |                           /
#              v                         v                          v
#            +--------------------------------------------------------+
#            |                    ContextAssembler                    |   (parallel, per-branch timeout)
#            |--------------------------------------------------------|
#            | Instructions + project + memory + ranked knowledge     |
#            | + patterns + tools + actions  ->  ContextPackage       |
#            +--------------------------------------------------------+
#                                        |
#                                        v
#            +-------------------+     score     +--------------------+
#            |  QualityAssessor  | <-----------> |  OptimizationLoop  |   (refine until can_proceed
#            +-------------------+               +--------------------+    or the refinement cap)
#                                        |
#                                        v
#                       [best package + quality report -> LLM]
